#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
freedrive_reset_action_server.py

ActionServers:
  freedrive_action        octa_probe_interfaces/action/Freedrive
  reset_action            octa_probe_interfaces/action/Reset

Freedrive forwards enable/disable to the driver's SetBool service
(`freedrive_service`). Reset plans back to `home_joint_positions`.
"""

from __future__ import annotations

import rclpy
from rclpy.callback_groups import ReentrantCallbackGroup
from rclpy.executors import MultiThreadedExecutor
from rclpy.node import Node

from std_srvs.srv import SetBool

from octa_probe_interfaces.action import Freedrive, Reset

from .audit_logger import AuditLogger, default_audit_path
from .goal_lifecycle import GoalPolicy
from .lifecycle_action_server import LifecycleActionServer
from .moveit_planner import MoveItPlanner
from .probe_params import declare_from_config, load_probe_params, motion_config
from .robot_mode import FreedriveController, ResetController
from .ros_service import call_service
from .types import FreedriveGoal, ResetGoal, UserAction


class FreedriveResetActionServerNode(Node):
    def __init__(self):
        super().__init__("freedrive_reset_action_server")

        self.declare_parameter("params_path", "")
        params_path = str(self.get_parameter("params_path").value).strip() or None
        self.motion_cfg = motion_config(load_probe_params(params_path))
        declare_from_config(self, self.motion_cfg)

        cb = ReentrantCallbackGroup()
        self.freedrive_client = self.create_client(SetBool, self.motion_cfg.freedrive_service, callback_group=cb)
        self.planner = MoveItPlanner(self, self.motion_cfg, callback_group=cb)

        audit_log_path = default_audit_path("freedrive_reset_action_server")
        self.audit = AuditLogger(self, "freedrive_reset_action_server", audit_log_path)

        self.freedrive_server = LifecycleActionServer(
            self,
            Freedrive,
            "freedrive_action",
            UserAction.FREEDRIVE,
            FreedriveController(self._set_freedrive, logger=self.get_logger()),
            GoalPolicy.PREEMPT,
            goal_from_msg=lambda g: FreedriveGoal(bool(g.enable)),
            audit=self.audit,
            callback_group=cb,
        )
        self.reset_server = LifecycleActionServer(
            self,
            Reset,
            "reset_action",
            UserAction.RESET,
            ResetController(self.motion_cfg, self.planner, logger=self.get_logger()),
            GoalPolicy.REJECT_CONCURRENT,
            goal_from_msg=lambda g: ResetGoal(bool(g.reset)),
            audit=self.audit,
            callback_group=cb,
        )
        self.get_logger().info(f"freedrive_reset_action_server ready (freedrive via {self.motion_cfg.freedrive_service})")

    def _set_freedrive(self, enable: bool) -> bool:
        resp = call_service(self.freedrive_client, SetBool.Request(data=bool(enable)),
                            timeout_s=2.0, wait_for_service_s=1.0)
        return bool(resp is not None and resp.success)

    def destroy_node(self) -> None:
        for name in ("freedrive_server", "reset_server"):
            server = getattr(self, name, None)
            if server is not None:
                server.destroy()
        if hasattr(self, "audit") and self.audit:
            self.audit.close()
        super().destroy_node()


def main(args=None):
    rclpy.init(args=args)
    node = FreedriveResetActionServerNode()
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
