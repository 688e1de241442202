#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
focus_action_server.py

ROLE
----
ActionServer:
  focus_action            octa_probe_interfaces/action/Focus

Subscribes:
  oct_image               sensor_msgs/Image (mono8 B-scans), gated to one frame per 50 ms

Uses:
  scan_3d                 std_srvs/SetBool on the coordinator (switch 3D capture)
  MoveIt 2 (pymoveit2)    corrective moves

Serves:
  capture_background      std_srvs/Trigger, saves the next frame as config/bg.jpg
"""

from __future__ import annotations

import os
import pathlib

import cv2
import rclpy
from cv_bridge import CvBridge
from rclpy.callback_groups import ReentrantCallbackGroup
from rclpy.executors import MultiThreadedExecutor
from rclpy.node import Node
from rclpy.qos import qos_profile_sensor_data

from sensor_msgs.msg import Image
from std_srvs.srv import SetBool, Trigger

from octa_probe_interfaces.action import Focus

from .audit_logger import AuditLogger, default_audit_path
from .focus_controller import FocusController
from .frames import FrameBuffer
from .goal_lifecycle import GoalPolicy
from .lifecycle_action_server import LifecycleActionServer
from .moveit_planner import MoveItPlanner
from .probe_params import (
    PACKAGE_NAME,
    declare_from_config,
    focus_config,
    load_probe_params,
    motion_config,
)
from .ros_service import call_service
from .types import FocusGoal, UserAction

try:
    from ament_index_python.packages import get_package_share_directory
    AMENT_AVAILABLE = True
except ImportError:
    AMENT_AVAILABLE = False


def _background_paths():
    paths = []
    if AMENT_AVAILABLE:
        try:
            paths.append(pathlib.Path(get_package_share_directory(PACKAGE_NAME)) / "config" / "bg.jpg")
        except LookupError:
            pass
    paths.append(pathlib.Path("config") / "bg.jpg")
    return paths


class FocusActionServerNode(Node):
    def __init__(self):
        super().__init__("focus_action_server")

        self.declare_parameter("params_path", "")
        params_path = str(self.get_parameter("params_path").value).strip() or None
        registry = load_probe_params(params_path)
        self.focus_cfg = focus_config(registry)
        self.motion_cfg = motion_config(registry)
        declare_from_config(self, self.focus_cfg)
        declare_from_config(self, self.motion_cfg)

        cb = ReentrantCallbackGroup()
        self.bridge = CvBridge()
        self.frames = FrameBuffer(self.focus_cfg.gating_interval_s)
        self.create_subscription(Image, "oct_image", self._on_image, qos_profile_sensor_data, callback_group=cb)
        self.scan_3d_client = self.create_client(SetBool, "scan_3d", callback_group=cb)

        self.planner = MoveItPlanner(self, self.motion_cfg, callback_group=cb)
        self.controller = FocusController(
            self.focus_cfg,
            self.motion_cfg,
            self.planner,
            capture=self._call_scan_3d,
            frames=self.frames,
            logger=self.get_logger(),
        )

        audit_log_path = default_audit_path("focus_action_server")
        self.audit = AuditLogger(self, "focus_action_server", audit_log_path)
        self.server = LifecycleActionServer(
            self,
            Focus,
            "focus_action",
            UserAction.FOCUS,
            self.controller,
            GoalPolicy.PREEMPT,
            goal_from_msg=lambda g: FocusGoal(float(g.angle_tolerance), float(g.z_tolerance), float(g.z_height)),
            audit=self.audit,
            callback_group=cb,
        )
        self.create_service(Trigger, "capture_background", self._on_capture_background, callback_group=cb)

        self.get_logger().info("focus_action_server ready")
        self.get_logger().info(f"Audit log: {audit_log_path}")

    def _on_image(self, msg: Image) -> None:
        frame = self.bridge.imgmsg_to_cv2(msg, desired_encoding="mono8")
        if self.frames.offer(frame):
            self.get_logger().debug(f"Storing new frame ({msg.width}x{msg.height})")

    def _call_scan_3d(self, activate: bool) -> bool:
        resp = call_service(self.scan_3d_client, SetBool.Request(data=bool(activate)), timeout_s=2.0)
        return bool(resp is not None and resp.success)

    def _on_capture_background(self, request, response):
        frame = self.frames.wait_newer(1.0)
        if frame is None:
            self.get_logger().info("No image captured - background not saved")
            response.success = False
            response.message = "no frame available"
            return response

        written = []
        for path in _background_paths():
            try:
                os.makedirs(path.parent, exist_ok=True)
                if cv2.imwrite(str(path), frame):
                    written.append(str(path))
            except OSError as e:
                self.get_logger().warning(f"Could not write {path}: {e}")
        response.success = bool(written)
        response.message = ", ".join(written) if written else "write failed"
        return response

    def destroy_node(self) -> None:
        if hasattr(self, "server"):
            self.server.destroy()
        if hasattr(self, "audit") and self.audit:
            self.audit.close()
        super().destroy_node()


def main(args=None):
    rclpy.init(args=args)
    node = FocusActionServerNode()
    executor = MultiThreadedExecutor()
    executor.add_node(node)
    try:
        executor.spin()
    except KeyboardInterrupt:
        pass
    finally:
        node.destroy_node()
        rclpy.shutdown()


if __name__ == "__main__":
    main()
