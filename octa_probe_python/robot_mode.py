#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
robot_mode.py

The two short robot-mode actions:

- FreedriveController toggles the arm's hand-guiding mode through a
  SetBool-style driver call and succeeds right away.
- ResetController plans back to the home joint configuration and executes.

Failures are published as feedback before the goal aborts.
"""

from __future__ import annotations

import logging
from typing import Callable

from .errors import ExecutionFailure, PlanningFailure
from .goal_lifecycle import ActionHandle
from .motion import execute_plan, plan_shortest
from .probe_params import MotionConfig
from .types import FreedriveGoal


class FreedriveController:
    def __init__(self, set_freedrive: Callable[[bool], bool], logger=None):
        self._set_freedrive = set_freedrive
        self.logger = logger or logging.getLogger("octa_probe.freedrive")

    def stop(self) -> None:
        pass

    def execute(self, handle: ActionHandle) -> str:
        goal: FreedriveGoal = handle.goal
        state = "ON" if goal.enable else "OFF"
        if not self._set_freedrive(bool(goal.enable)):
            self.logger.warning(f"Freedrive {state} request failed")
            handle.publish_feedback(f"Freedrive {state} request failed\n")
            raise ExecutionFailure(f"Freedrive {state} request failed\n")
        handle.publish_feedback(f"Freedrive Mode {state}\n")
        self.logger.info(f"Freedrive Mode {state}")
        return f"Freedrive {state}\n"


class ResetController:
    def __init__(self, motion: MotionConfig, planner, logger=None):
        self.motion = motion
        self.planner = planner
        self.logger = logger or logging.getLogger("octa_probe.reset")

    def stop(self) -> None:
        self.planner.stop()

    def execute(self, handle: ActionHandle) -> str:
        handle.publish_feedback("Planning to home position\n")
        home = list(self.motion.home_joint_positions)
        try:
            plan = plan_shortest(self.planner, home, None, self.motion.planners)
            handle.checkpoint()
            handle.publish_feedback("Moving to home position\n")
            execute_plan(self.planner, plan)
        except (PlanningFailure, ExecutionFailure) as e:
            self.logger.warning(f"Reset: {str(e).strip()}")
            handle.publish_feedback(str(e))
            raise
        handle.checkpoint()
        self.logger.info("Reset complete")
        return "Reset to default position complete\n"
