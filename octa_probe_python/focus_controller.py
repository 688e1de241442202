#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
focus_controller.py

Closed-loop focus: capture frames, reconstruct the surface, measure tilt and
height error against the goal, correct the probe pose, repeat until both the
angle and the height are inside tolerance.

Units:
  - angle tolerance in degrees, measured roll/pitch in radians
  - z_tolerance in millimetres, dz in metres
  - z_height and the reconstructed points in pixels; scale_factor (px per m)
    converts pixel heights to metres

Collaborators (duck-typed):
  capture(activate: bool) -> bool      scan_3d enable/disable request
  frames                               FrameBuffer fed by the image subscription
  planner                              see motion.py
  reconstruct(frames) -> (N, 3) array  defaults to reconstruction.lines_3d
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np
from scipy.spatial.transform import Rotation as Rot

from .errors import (
    ConvergenceFailure,
    ExecutionFailure,
    MeasurementError,
    PlanningFailure,
    ProbeError,
    ServiceTimeout,
)
from .frames import FrameBuffer
from .goal_lifecycle import ActionHandle
from .motion import PathEnvelope, Pose, execute_plan, plan_shortest
from .probe_params import FocusConfig, MotionConfig
from .reconstruction import align_to_direction, lines_3d, oriented_bounding_box
from .types import FocusGoal


@dataclass(frozen=True)
class AlignmentSample:
    roll: float   # rad
    pitch: float  # rad
    yaw: float    # rad
    dz: float     # m
    center: Tuple[float, float, float]
    points: np.ndarray = field(repr=False, compare=False, default=None)

    @property
    def rotation(self) -> Rot:
        return Rot.from_euler("xyz", [self.roll, self.pitch, self.yaw])

    def describe(self) -> str:
        r, p, y = (math.degrees(v) for v in (self.roll, self.pitch, self.yaw))
        cx, cy, cz = self.center
        return (
            "Calculated:\n"
            f"    [Rotation] R:{r:.2f} P:{p:.2f} Y:{y:.2f}\n"
            f"    [Center]   x:{cx:.2f}  y:{cy:.2f}  z:{cz:.2f}\n"
            f"    [Height]   dz:{self.dz * 1000:.4f}\n"
        )


def remap_axes(roll_raw: float, pitch_raw: float, yaw_raw: float) -> Tuple[float, float, float]:
    """Box frame -> probe frame for this probe mounting."""
    return -pitch_raw, roll_raw, yaw_raw


def angle_focused(roll: float, pitch: float, tolerance_deg: float) -> bool:
    tol = math.radians(tolerance_deg)
    return abs(roll) < tol and abs(pitch) < tol


def height_error(target_height: float, center_z: float, scale_factor: float) -> float:
    if not math.isfinite(scale_factor) or scale_factor <= 0.0:
        raise MeasurementError(f"invalid scale factor {scale_factor}\n")
    return (target_height - center_z) / scale_factor


def height_focused(dz: float, tolerance: float) -> bool:
    """`tolerance` must already be in the units of dz."""
    return abs(dz) < tolerance


def measure(points: np.ndarray, target_height: float, scale_factor: float) -> AlignmentSample:
    center, R, extents = oriented_bounding_box(points)
    aligned = align_to_direction(R, extents)
    roll_raw, pitch_raw, yaw_raw = Rot.from_matrix(aligned).as_euler("xyz")
    roll, pitch, yaw = remap_axes(roll_raw, pitch_raw, yaw_raw)
    dz = height_error(target_height, float(center[2]), scale_factor)
    if not all(math.isfinite(v) for v in (roll, pitch, yaw, dz)):
        raise MeasurementError("Non-finite alignment measurement\n")
    return AlignmentSample(
        float(roll), float(pitch), float(yaw), float(dz),
        tuple(float(c) for c in center), points,
    )


def compose_correction(current: Pose, sample: AlignmentSample, rotate: bool, lift: bool) -> Pose:
    target = current
    if rotate:
        target = target.rotated(sample.rotation)
    if lift:
        target = target.translated(dz=sample.dz)
    return target


class FocusController:
    def __init__(
        self,
        config: FocusConfig,
        motion: MotionConfig,
        planner,
        capture: Callable[[bool], bool],
        frames: FrameBuffer,
        reconstruct: Optional[Callable[[List[np.ndarray]], np.ndarray]] = None,
        logger=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.motion = motion
        self.planner = planner
        self.frames = frames
        self.logger = logger or logging.getLogger("octa_probe.focus")
        self._capture = capture
        self._reconstruct = reconstruct or self._default_reconstruct
        self._clock = clock

    def _default_reconstruct(self, frames: List[np.ndarray]) -> np.ndarray:
        cfg = self.config
        return lines_3d(frames, cfg.interval_count, cfg.frame_spacing_px, cfg.surface_threshold,
                        frame_shape=(cfg.frame_height, cfg.frame_width))

    def stop(self) -> None:
        self.planner.stop()

    # ---------------- execution ----------------
    def execute(self, handle: ActionHandle) -> str:
        goal: FocusGoal = handle.goal
        cfg = self.config
        z_tol_m = goal.z_tolerance / 1000.0
        self.logger.info(
            f"Focus goal: angle_tolerance={goal.angle_tolerance:.2f} deg, "
            f"z_height_tolerance={goal.z_tolerance:.2f} mm"
        )

        angle_ok = False
        z_ok = False
        corrected_once = False
        started = self._clock()
        iteration = 0

        while not (angle_ok and z_ok):
            handle.checkpoint()
            iteration += 1
            if iteration > int(cfg.max_iterations):
                raise ConvergenceFailure(f"Focus did not converge within {cfg.max_iterations} iterations\n")
            if (self._clock() - started) > cfg.max_duration_s:
                raise ConvergenceFailure(f"Focus did not converge within {cfg.max_duration_s:.0f} s\n")

            frames = self._acquire(handle)
            handle.publish_feedback("Calculating Rotations\n")
            sample = measure(self._reconstruct(frames), goal.z_height, cfg.scale_factor)
            handle.publish_feedback(sample.describe())
            self.logger.info(sample.describe())

            if angle_focused(sample.roll, sample.pitch, goal.angle_tolerance):
                angle_ok = True
                handle.publish_feedback("=> Angle focused\n")
            elif cfg.skip_angle_tolerance and (angle_ok or corrected_once):
                angle_ok = True
            else:
                angle_ok = False

            z_ok = height_focused(sample.dz, z_tol_m)
            if z_ok:
                handle.publish_feedback("=> Height focused\n")
            if angle_ok and z_ok:
                break

            # A rotation attempt counts for the skip rule whether or not it lands.
            if not angle_ok:
                corrected_once = True
            try:
                current = self.planner.current_pose()
                target = compose_correction(current, sample, rotate=not angle_ok, lift=not z_ok)
                self.logger.info(target.describe())
                self._move(handle, current, target)
            except (PlanningFailure, ExecutionFailure) as e:
                self.logger.info(str(e).strip())
                handle.publish_feedback(str(e))
                continue

            if cfg.early_terminate:
                break

        handle.publish_feedback("Within tolerance or Early termination\n")
        return "Focus completed successfully\n"

    def _move(self, handle: ActionHandle, current: Pose, target: Pose) -> None:
        envelope = PathEnvelope.around(
            current, self.motion.envelope_radius_m, self.motion.envelope_angular_tolerance_rad
        )
        handle.checkpoint()
        plan = plan_shortest(self.planner, target, envelope, self.motion.planners)
        handle.checkpoint()
        execute_plan(self.planner, plan)
        handle.checkpoint()
        self.logger.info("Execute Success!")

    # ---------------- acquisition ----------------
    def _acquire(self, handle: ActionHandle) -> List[np.ndarray]:
        try:
            self._set_capture(handle, True)
            frames = self._collect(handle)
        except ProbeError:
            self._release_capture()
            raise
        self._set_capture(handle, False)
        return frames

    def _collect(self, handle: ActionHandle) -> List[np.ndarray]:
        cfg = self.config
        out = []
        for i in range(int(cfg.interval_count)):
            frame = self.frames.wait_newer(
                cfg.frame_timeout_s,
                abort=lambda: handle.is_cancel_requested() or not handle.is_active(),
            )
            handle.checkpoint()
            if frame is None:
                self.logger.warning("timed out. cannot acquire image")
                raise ServiceTimeout("timed out. cannot acquire image.\n")
            out.append(frame)
            self.logger.info(f"Collected image {i + 1}")
        return out

    def _set_capture(self, handle: ActionHandle, activate: bool) -> None:
        name = "activate_3d_scan" if activate else "deactivate_3d_scan"
        deadline = self._clock() + self.config.capture_timeout_s
        while not self._capture(activate):
            handle.checkpoint()
            if self._clock() > deadline:
                self.logger.warning(f"{name} not responding...")
                raise ServiceTimeout(f"{name} timed out\n")
            handle.wait(self.config.retry_period_s)
        handle.checkpoint()

    def _release_capture(self) -> None:
        try:
            self._capture(False)
        except Exception as e:
            self.logger.warning(f"could not disable 3D scan: {e!r}")
