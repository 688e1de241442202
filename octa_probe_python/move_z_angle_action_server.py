#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
move_z_angle_action_server.py

ActionServer:
  move_z_angle_action     octa_probe_interfaces/action/MoveZAngle

Rejects a new goal while one is executing.
"""

from __future__ import annotations

import rclpy
from rclpy.callback_groups import ReentrantCallbackGroup
from rclpy.executors import MultiThreadedExecutor
from rclpy.node import Node

from octa_probe_interfaces.action import MoveZAngle

from .audit_logger import AuditLogger, default_audit_path
from .goal_lifecycle import GoalPolicy
from .lifecycle_action_server import LifecycleActionServer
from .move_z_angle import MoveZAngleController
from .moveit_planner import MoveItPlanner
from .probe_params import declare_from_config, load_probe_params, motion_config
from .types import MoveZAngleGoal, UserAction


class MoveZAngleActionServerNode(Node):
    def __init__(self):
        super().__init__("move_z_angle_action_server")

        self.declare_parameter("params_path", "")
        params_path = str(self.get_parameter("params_path").value).strip() or None
        self.motion_cfg = motion_config(load_probe_params(params_path))
        declare_from_config(self, self.motion_cfg)

        cb = ReentrantCallbackGroup()
        self.planner = MoveItPlanner(self, self.motion_cfg, callback_group=cb)
        self.controller = MoveZAngleController(self.motion_cfg, self.planner, logger=self.get_logger())

        audit_log_path = default_audit_path("move_z_angle_action_server")
        self.audit = AuditLogger(self, "move_z_angle_action_server", audit_log_path)
        self.server = LifecycleActionServer(
            self,
            MoveZAngle,
            "move_z_angle_action",
            UserAction.MOVE_Z_ANGLE,
            self.controller,
            GoalPolicy.REJECT_CONCURRENT,
            goal_from_msg=lambda g: MoveZAngleGoal(float(g.target_angle), float(g.radius), float(g.angle)),
            audit=self.audit,
            callback_group=cb,
        )
        self.get_logger().info("move_z_angle_action_server ready")

    def destroy_node(self) -> None:
        if hasattr(self, "server"):
            self.server.destroy()
        if hasattr(self, "audit") and self.audit:
            self.audit.close()
        super().destroy_node()


def main(args=None):
    rclpy.init(args=args)
    node = MoveZAngleActionServerNode()
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
