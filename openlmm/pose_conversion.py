"""Conversion of pose file rows into 4x4 homogeneous matrices."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np


def _values(values: Sequence[float], needed: int, fmt: str) -> list[float]:
    vals = [float(v) for v in values]
    if len(vals) < needed:
        raise ValueError(f"{fmt} pose needs at least {needed} values, got {len(vals)}")
    return vals


def _quaternion_matrix(w: float, x: float, y: float, z: float) -> np.ndarray:
    """Rotation matrix of a quaternion, assumed to be of unit length."""
    tx, ty, tz = 2.0 * x, 2.0 * y, 2.0 * z
    twx, twy, twz = tx * w, ty * w, tz * w
    txx, txy, txz = tx * x, ty * x, tz * x
    tyy, tyz, tzz = ty * y, tz * y, tz * z
    return np.array(
        [
            [1.0 - (tyy + tzz), txy - twz, txz + twy],
            [txy + twz, 1.0 - (txx + tzz), tyz - twx],
            [txz - twy, tyz + twx, 1.0 - (txx + tyy)],
        ]
    )


def kitti_pose_to_isometry(values: Sequence[float]) -> np.ndarray:
    """Build a pose from a KITTI row: a row-major 3x4 matrix."""
    vals = _values(values, 12, "KITTI")
    pose = np.eye(4)
    pose[:3, :] = np.reshape(vals[:12], (3, 4))
    return pose


def tum_pose_to_isometry(values: Sequence[float]) -> np.ndarray:
    """Build a pose from a TUM row: ``timestamp tx ty tz qx qy qz qw``."""
    vals = _values(values, 8, "TUM")
    pose = np.eye(4)
    pose[:3, 3] = vals[1:4]
    pose[:3, :3] = _quaternion_matrix(vals[7], vals[4], vals[5], vals[6])
    return pose


def custom_pose_to_isometry(values: Sequence[float]) -> np.ndarray:
    """Pose for the custom format, which carries no pose: always the identity."""
    return np.eye(4)