#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
motion.py

Pose math and the planning helpers shared by the focus, move_z_angle and
reset controllers.

The motion planner is a black box with this duck-typed surface:

    planner.current_pose()                                   -> Pose
    planner.plan(target, envelope, planner_id)               -> PlanCandidate | None
    planner.execute(candidate)                               -> bool
    planner.stop()                                           -> None

`target` is a Pose, or a list of joint positions for joint-space goals.
moveit_planner.MoveItPlanner implements it on top of pymoveit2; the tests use
small fakes.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.transform import Rotation as Rot

from .errors import ExecutionFailure, PlanningFailure

logger = logging.getLogger("octa_probe.motion")


@dataclass(frozen=True)
class Pose:
    """TCP pose in the planning frame. Quaternion order is (x, y, z, w)."""
    position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    orientation: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)

    @property
    def rotation(self) -> Rot:
        return Rot.from_quat(self.orientation)

    def rotated(self, delta: Rot) -> "Pose":
        """Apply `delta` in the TCP frame (current * delta), normalized."""
        q = (self.rotation * delta).as_quat()
        q = q / np.linalg.norm(q)
        return Pose(self.position, tuple(float(v) for v in q))

    def translated(self, dx: float = 0.0, dy: float = 0.0, dz: float = 0.0) -> "Pose":
        x, y, z = self.position
        return Pose((x + dx, y + dy, z + dz), self.orientation)

    def describe(self) -> str:
        x, y, z = self.position
        r, p, yw = np.degrees(self.rotation.as_euler("xyz"))
        return (
            f"Target Position: x={x:.4f}, y={y:.4f}, z={z:.4f} | "
            f"Orientation: R={r:.2f}, P={p:.2f}, Y={yw:.2f}"
        )


@dataclass(frozen=True)
class PathEnvelope:
    """
    Path constraint for the whole trajectory: the TCP stays inside a sphere
    around `center`, with a per-axis orientation tolerance.
    """
    center: Pose
    radius_m: float = 0.05
    angular_tolerance_rad: float = math.pi

    @classmethod
    def around(cls, start: Pose, radius_m: float = 0.05,
               angular_tolerance_rad: float = math.pi) -> "PathEnvelope":
        return cls(start, float(radius_m), float(angular_tolerance_rad))

    def contains(self, position: Sequence[float]) -> bool:
        d = np.asarray(position, dtype=float) - np.asarray(self.center.position, dtype=float)
        return float(np.linalg.norm(d)) <= self.radius_m


@dataclass
class PlanCandidate:
    planner_id: str
    trajectory: Any = None
    joint_path: List[List[float]] = field(default_factory=list)

    @property
    def path_length(self) -> float:
        """Joint-space length: sum of distances between consecutive waypoints."""
        if len(self.joint_path) < 2:
            return 0.0
        pts = np.asarray(self.joint_path, dtype=float)
        return float(np.sum(np.linalg.norm(np.diff(pts, axis=0), axis=1)))


def select_shortest(candidates: Sequence[Optional[PlanCandidate]]) -> Optional[PlanCandidate]:
    """Shortest successful candidate, or None when every planner failed."""
    ok = [c for c in candidates if c is not None]
    if not ok:
        return None
    return min(ok, key=lambda c: c.path_length)


def plan_candidates(planner, target, envelope: Optional[PathEnvelope],
                    planner_ids: Sequence[str]) -> List[Optional[PlanCandidate]]:
    """Plan with every planner id concurrently. A planner that raises counts as failed."""

    def _one(planner_id: str) -> Optional[PlanCandidate]:
        try:
            return planner.plan(target, envelope, planner_id)
        except Exception as e:
            logger.warning(f"planner {planner_id} failed: {e!r}")
            return None

    if len(planner_ids) == 1:
        return [_one(planner_ids[0])]
    with ThreadPoolExecutor(max_workers=len(planner_ids), thread_name_prefix="plan") as pool:
        return list(pool.map(_one, planner_ids))


def plan_shortest(planner, target, envelope: Optional[PathEnvelope],
                  planner_ids: Sequence[str]) -> PlanCandidate:
    best = select_shortest(plan_candidates(planner, target, envelope, planner_ids))
    if best is None:
        raise PlanningFailure("Planning failed!\n")
    return best


def execute_plan(planner, candidate: PlanCandidate) -> None:
    if not planner.execute(candidate):
        raise ExecutionFailure("Execution failed!\n")
