#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
moveit_planner.py

The planner surface from motion.py, implemented with pymoveit2 and tf2.

- current_pose(): base_frame -> tcp_link from the TF buffer
- plan(): one planner id per call; the request is built under a lock (the
  MoveIt2 object keeps planner id and path constraints as state), the wait
  for the plan happens outside it, so candidates still plan concurrently
- execute(): execute the stored trajectory and wait for the controller
- stop(): cancel the running execution
"""

from __future__ import annotations

import threading
from typing import Optional

from rclpy.duration import Duration
from rclpy.time import Time
from tf2_ros import Buffer, TransformListener
from pymoveit2 import MoveIt2

from .errors import PlanningFailure
from .motion import PathEnvelope, PlanCandidate, Pose
from .probe_params import MotionConfig
from .ros_service import wait_for_future


class MoveItPlanner:
    def __init__(self, node, motion: MotionConfig, callback_group=None, plan_timeout_s: float = 10.0):
        self.node = node
        self.motion = motion
        self.plan_timeout_s = float(plan_timeout_s)
        self.moveit2 = MoveIt2(
            node=node,
            joint_names=list(motion.joint_names),
            base_link_name=motion.base_frame,
            end_effector_name=motion.tcp_link,
            group_name=motion.group_name,
            callback_group=callback_group,
        )
        self.tf_buffer = Buffer()
        self.tf_listener = TransformListener(self.tf_buffer, node)
        self._lock = threading.Lock()

    def current_pose(self) -> Pose:
        try:
            t = self.tf_buffer.lookup_transform(
                self.motion.base_frame, self.motion.tcp_link, Time(), timeout=Duration(seconds=1.0)
            )
        except Exception as e:
            raise PlanningFailure(f"TF {self.motion.base_frame}->{self.motion.tcp_link} unavailable: {e}\n")
        p = t.transform.translation
        q = t.transform.rotation
        return Pose((p.x, p.y, p.z), (q.x, q.y, q.z, q.w))

    def plan(self, target, envelope: Optional[PathEnvelope], planner_id: str) -> Optional[PlanCandidate]:
        base, tcp = self.motion.base_frame, self.motion.tcp_link
        with self._lock:
            self.moveit2.planner_id = planner_id
            self.moveit2.clear_path_constraints()
            if envelope is not None:
                self.moveit2.set_path_position_constraint(
                    position=list(envelope.center.position),
                    frame_id=base,
                    target_link=tcp,
                    tolerance=envelope.radius_m,
                )
                self.moveit2.set_path_orientation_constraint(
                    quat_xyzw=list(envelope.center.orientation),
                    frame_id=base,
                    target_link=tcp,
                    tolerance=envelope.angular_tolerance_rad,
                )
            if isinstance(target, Pose):
                future = self.moveit2.plan_async(
                    position=list(target.position),
                    quat_xyzw=list(target.orientation),
                    frame_id=base,
                    target_link=tcp,
                )
            else:
                future = self.moveit2.plan_async(joint_positions=list(target))
            self.moveit2.clear_path_constraints()

        if future is None:
            return None
        if not wait_for_future(future, self.plan_timeout_s):
            self.node.get_logger().warn(f"{planner_id}: planning timed out")
            return None

        trajectory = self.moveit2.get_trajectory(future)
        if trajectory is None:
            return None
        return PlanCandidate(planner_id, trajectory, [list(pt.positions) for pt in trajectory.points])

    def execute(self, candidate: PlanCandidate) -> bool:
        self.moveit2.execute(candidate.trajectory)
        return bool(self.moveit2.wait_until_executed())

    def stop(self) -> None:
        self.moveit2.cancel_execution()
