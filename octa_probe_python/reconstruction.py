#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
reconstruction.py

Turns a short stack of B-scan frames into a surface point set and fits the
minimal oriented bounding box to it.

Point coordinates are in pixels:
  x = column inside the frame
  y = frame index * frame_spacing_px
  z = row of the first pixel brighter than the surface threshold (depth)
"""

from typing import Optional, Sequence, Tuple

import numpy as np
import open3d as o3d

from .errors import MeasurementError


def surface_rows(frame: np.ndarray, threshold: float) -> np.ndarray:
    """First row above `threshold` for every column; NaN where the column never crosses it."""
    img = np.asarray(frame, dtype=float)
    if img.ndim == 3:
        img = img.mean(axis=2)
    above = img > threshold
    hit = above.any(axis=0)
    rows = above.argmax(axis=0).astype(float)
    rows[~hit] = np.nan
    return rows


def lines_3d(frames: Sequence[np.ndarray], interval_count: int,
             frame_spacing_px: float = 10.0, threshold: float = 50.0,
             frame_shape: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """frame_shape is (height, width); frames of any other size are refused."""
    pts = []
    for i, frame in enumerate(list(frames)[:interval_count]):
        if frame_shape is not None and tuple(np.shape(frame)[:2]) != tuple(frame_shape):
            h, w = np.shape(frame)[:2]
            raise MeasurementError(
                f"Unexpected frame size {w}x{h}, expected {frame_shape[1]}x{frame_shape[0]}\n"
            )
        rows = surface_rows(frame, threshold)
        cols = np.nonzero(np.isfinite(rows))[0]
        if cols.size == 0:
            continue
        ys = np.full(cols.size, i * frame_spacing_px, dtype=float)
        pts.append(np.column_stack((cols.astype(float), ys, rows[cols])))
    if not pts:
        raise MeasurementError("No surface found in the acquired frames\n")
    return np.vstack(pts)


def oriented_bounding_box(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Minimal-volume oriented box: returns (center, R, extents). Columns of R
    are the box axes, det(R) = +1.

    OCT surfaces are close to planar, so the hull is built with joggled input.
    """
    pts = np.asarray(points, dtype=float)
    if pts.ndim != 2 or pts.shape[1] != 3 or pts.shape[0] < 4:
        raise MeasurementError("Need at least four 3D points for a bounding box\n")
    if not np.all(np.isfinite(pts)):
        raise MeasurementError("Point set contains non-finite values\n")

    pcd = o3d.geometry.PointCloud(o3d.utility.Vector3dVector(pts))
    try:
        obb = pcd.get_minimal_oriented_bounding_box(robust=True)
    except RuntimeError as e:
        raise MeasurementError(f"Bounding box fit failed: {e}\n")

    R = np.array(obb.R, dtype=float)
    if np.linalg.det(R) < 0:
        R[:, 2] = -R[:, 2]
    return np.array(obb.center, dtype=float), R, np.array(obb.extent, dtype=float)


def align_to_direction(R: np.ndarray, extents: np.ndarray) -> np.ndarray:
    """
    Re-express box axes as a frame close to the image frame: the thinnest axis
    (surface normal) becomes z pointing to +z, the in-plane axis closest to
    image x becomes x pointing to +x, and y completes a right-handed frame.
    """
    R = np.asarray(R, dtype=float)
    normal_idx = int(np.argmin(extents))
    z = R[:, normal_idx].copy()
    if z[2] < 0:
        z = -z

    in_plane = [R[:, i] for i in range(3) if i != normal_idx]
    x = max(in_plane, key=lambda v: abs(v[0])).copy()
    if x[0] < 0:
        x = -x
    y = np.cross(z, x)
    return np.column_stack((x, y, z))
