#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
Shared fakes for the pure-Python core.

None of these touch ROS: the planner, capture service, frame source and
dispatcher are the duck-typed collaborators the core is written against.
"""

import queue
import threading
from typing import Dict, List, Optional

import numpy as np
import pytest

from octa_probe_python.goal_lifecycle import GoalLifecycleManager, GoalPolicy
from octa_probe_python.motion import PlanCandidate, Pose
from octa_probe_python.types import ActionRejected, ActionResult, GoalStatus, UserAction


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.t = float(start)

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class FakePlanner:
    """
    lengths: planner_id -> joint path length, or None for "no plan".
    on_execute: optional hook called with the candidate before returning.
    """

    def __init__(self, lengths: Optional[Dict[str, Optional[float]]] = None,
                 execute_ok: bool = True, pose: Optional[Pose] = None):
        self.lengths = lengths if lengths is not None else {"ptp": 1.0, "lin": 2.0}
        self.execute_ok = execute_ok
        self.pose = pose or Pose((0.3, 0.0, 0.4), (0.0, 0.0, 0.0, 1.0))
        self.planned: List[tuple] = []
        self.executed: List[PlanCandidate] = []
        self.stops = 0
        self.on_execute = None
        self._lock = threading.Lock()

    def current_pose(self) -> Pose:
        return self.pose

    def plan(self, target, envelope, planner_id):
        with self._lock:
            self.planned.append((target, envelope, planner_id))
        length = self.lengths.get(planner_id)
        if length is None:
            return None
        return PlanCandidate(planner_id, trajectory=target, joint_path=[[0.0], [float(length)]])

    def execute(self, candidate) -> bool:
        self.executed.append(candidate)
        if self.on_execute is not None:
            self.on_execute(candidate)
        return self.execute_ok

    def stop(self) -> None:
        self.stops += 1


class FakeFrames:
    """Frame source that renders a flat surface at `surface_row` on every request."""

    def __init__(self, surface_row: int = 100, shape=(512, 500), available: bool = True):
        self.surface_row = surface_row
        self.shape = shape
        self.available = available
        self.requests = 0

    def wait_newer(self, timeout_s, abort=None, poll_s=0.05):
        self.requests += 1
        if not self.available:
            return None
        return flat_frame(self.surface_row, self.shape)


def flat_frame(surface_row: int, shape=(512, 500)) -> np.ndarray:
    img = np.zeros(shape, dtype=np.uint8)
    img[surface_row:, :] = 255
    return img


class FakeDispatcher:
    def __init__(self):
        self.events: "queue.Queue" = queue.Queue()
        self.sent: List[tuple] = []
        self.cancelled: List = []
        self.active = set()

    def send_goal(self, kind, goal, goal_id):
        self.sent.append((kind, goal, goal_id))
        self.active.add(kind)

    def cancel(self, kind) -> bool:
        self.cancelled.append(kind)
        return kind in self.active

    def is_active(self, kind) -> bool:
        return kind in self.active

    def goals(self, kind):
        return [g for k, g, _ in self.sent if k is kind]

    def last_id(self, kind) -> int:
        return [i for k, _, i in self.sent if k is kind][-1]

    def finish(self, kind, status=GoalStatus.SUCCEEDED, message="done\n", goal_id=None):
        matching = [(g, i) for k, g, i in self.sent if k is kind]
        goal, last = matching[-1]
        goal_id = last if goal_id is None else goal_id
        self.active.discard(kind)
        self.events.put(ActionResult(kind, goal_id, status, message, goal))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


class LocalDispatcher:
    """
    Runs real controllers in-process behind the dispatcher surface, one
    lifecycle manager per action kind, with the policies the action servers use.
    """

    POLICIES = {
        UserAction.FOCUS: GoalPolicy.PREEMPT,
        UserAction.MOVE_Z_ANGLE: GoalPolicy.REJECT_CONCURRENT,
        UserAction.FREEDRIVE: GoalPolicy.PREEMPT,
        UserAction.RESET: GoalPolicy.REJECT_CONCURRENT,
    }

    def __init__(self, controllers):
        self.events = queue.Queue()
        self.managers = {
            kind: GoalLifecycleManager(
                kind,
                controller.execute,
                policy=self.POLICIES[kind],
                stop_fn=controller.stop,
                on_result=self.events.put,
                on_feedback=self.events.put,
            )
            for kind, controller in controllers.items()
        }

    def send_goal(self, kind, goal, goal_id):
        manager = self.managers.get(kind)
        if manager is None:
            self.events.put(ActionRejected(kind, goal_id, "no action server"))
        elif manager.propose(goal, goal_id) is None:
            self.events.put(ActionRejected(kind, goal_id, f"a {kind.label} goal is already active"))

    def cancel(self, kind) -> bool:
        manager = self.managers.get(kind)
        return manager is not None and manager.cancel()

    def is_active(self, kind) -> bool:
        manager = self.managers.get(kind)
        return manager is not None and manager.has_active()

    def shutdown(self) -> None:
        for manager in self.managers.values():
            manager.shutdown()
