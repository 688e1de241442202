#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
move_z_angle.py

Rotate the probe about its own z axis by a signed increment, stepping the TCP
around a circle of `radius`. The coordinator owns the accumulated angle and
the lap counter; this module only supplies the arithmetic and the single-shot
controller that plans and executes one move.
"""

from __future__ import annotations

import logging
import math
from typing import Tuple

from scipy.spatial.transform import Rotation as Rot

from .errors import ExecutionFailure, PlanningFailure
from .goal_lifecycle import ActionHandle
from .motion import PathEnvelope, Pose, execute_plan, plan_shortest
from .probe_params import MotionConfig
from .types import MoveZAngleGoal


def yaw_increment(angle_limit: float, num_pt: int) -> float:
    """Step size for next/previous. Zero points means zero increment."""
    if num_pt == 0:
        return 0.0
    return angle_limit / float(num_pt)


def compose_target(current: Pose, target_angle_deg: float, radius: float, angle_deg: float) -> Pose:
    turned = current.rotated(Rot.from_euler("xyz", [0.0, 0.0, math.radians(target_angle_deg)]))
    a = math.radians(angle_deg)
    return turned.translated(dx=radius * math.cos(a), dy=radius * math.sin(a))


def advance_lap(angle: float, circle_state: int, yaw: float, epsilon: float = 1e-6) -> Tuple[float, int]:
    """Accumulated angle and signed lap counter after a successful move by `yaw`."""
    angle += yaw
    circle_state += 1 if yaw > 0.0 else -1
    if abs(angle) < epsilon:
        circle_state = 1
    return angle, circle_state


class MoveZAngleController:
    def __init__(self, motion: MotionConfig, planner, logger=None):
        self.motion = motion
        self.planner = planner
        self.logger = logger or logging.getLogger("octa_probe.move_z_angle")

    def stop(self) -> None:
        self.planner.stop()

    def execute(self, handle: ActionHandle) -> str:
        goal: MoveZAngleGoal = handle.goal
        self.logger.info(f"Target angle: {goal.target_angle:.2f} deg")

        current = self.planner.current_pose()
        target = compose_target(current, goal.target_angle, goal.radius, goal.angle)
        self.logger.info(target.describe())
        envelope = PathEnvelope.around(
            current, self.motion.envelope_radius_m, self.motion.envelope_angular_tolerance_rad
        )

        try:
            handle.checkpoint()
            plan = plan_shortest(self.planner, target, envelope, self.motion.planners)
            handle.publish_feedback("Planning succeeded; starting execution.\n")

            handle.checkpoint()
            execute_plan(self.planner, plan)
        except (PlanningFailure, ExecutionFailure) as e:
            self.logger.warning(str(e).strip())
            handle.publish_feedback(str(e))
            raise
        handle.checkpoint()

        handle.publish_feedback("Move Z Angle completed successfully!\n", goal.angle + goal.target_angle)
        self.logger.info("Move Z Angle done.")
        return "Move Z Angle completed\n"
