#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
types.py

Shared vocabulary for the coordinator, the controllers and the tests.

Nothing in here imports rclpy. The ROS nodes translate between these types and
the octa_probe_interfaces messages at their boundary.
"""

from __future__ import annotations

import enum
import itertools
from dataclasses import dataclass
from typing import Any, Optional


class UserAction(enum.Enum):
    """The single high-level action the coordinator is working on."""
    NONE = "none"
    FREEDRIVE = "freedrive"
    RESET = "reset"
    FOCUS = "focus"
    MOVE_Z_ANGLE = "move_z_angle"
    SCAN = "scan"

    @property
    def label(self) -> str:
        return _ACTION_LABELS[self]


_ACTION_LABELS = {
    UserAction.NONE: "Idle",
    UserAction.FREEDRIVE: "Freedrive",
    UserAction.RESET: "Reset",
    UserAction.FOCUS: "Focus",
    UserAction.MOVE_Z_ANGLE: "MoveZangle",
    UserAction.SCAN: "Scanning",
}

# Action kinds that are backed by an action server (SCAN is a console pulse).
GOAL_KINDS = (
    UserAction.FOCUS,
    UserAction.MOVE_Z_ANGLE,
    UserAction.FREEDRIVE,
    UserAction.RESET,
)


class Mode(enum.Enum):
    """Imaging mode. On the wire this is four mutually exclusive booleans."""
    ROBOT = "robot"
    OCT = "oct"
    OCTA = "octa"
    OCE = "oce"

    @property
    def label(self) -> str:
        return f"{self.name} Mode"


class GoalStatus(enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    CANCELED = "canceled"

    @property
    def is_active(self) -> bool:
        return self in (GoalStatus.ACCEPTED, GoalStatus.EXECUTING)

    @property
    def is_terminal(self) -> bool:
        return self in (GoalStatus.SUCCEEDED, GoalStatus.ABORTED, GoalStatus.CANCELED)


# ---------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class FocusGoal:
    angle_tolerance: float  # degrees
    z_tolerance: float      # millimetres
    z_height: float         # pixels (same frame as the reconstructed point set)


@dataclass(frozen=True)
class MoveZAngleGoal:
    target_angle: float  # degrees, signed yaw increment
    radius: float        # metres
    angle: float         # degrees, accumulated angle before this move


@dataclass(frozen=True)
class FreedriveGoal:
    enable: bool


@dataclass(frozen=True)
class ResetGoal:
    reset: bool = True


_goal_ids = itertools.count(1)


def next_goal_id() -> int:
    return next(_goal_ids)


# ---------------------------------------------------------------------
# Events consumed by the arbiter tick
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ActionFeedback:
    kind: UserAction
    goal_id: int
    text: str
    value: float = 0.0


@dataclass(frozen=True)
class ActionResult:
    kind: UserAction
    goal_id: int
    status: GoalStatus
    message: str
    goal: Any = None


@dataclass(frozen=True)
class ActionRejected:
    kind: UserAction
    goal_id: int
    reason: str = ""


@dataclass(frozen=True)
class StatusNote:
    """Free text appended to the published status message."""
    text: str
    source: Optional[str] = None
