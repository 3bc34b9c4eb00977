"""Numeric helpers for moving object segmentation: histograms, Otsu, poses."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Sequence
from os import PathLike
from pathlib import Path
from typing import Union

import numpy as np

from openlmm.pose_conversion import _quaternion_matrix

PathType = Union[str, "PathLike[str]"]

logger = logging.getLogger(__name__)

_HASH_X = 73856093
_HASH_Y = 19349669
_HASH_Z = 83492791
_HASH_MASK = (1 << 30) - 1
_UINT32 = 0xFFFFFFFF

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")

KITTI_COLUMNS = 12
TUM_COLUMNS = 8


def _file_number(name: str) -> int:
    stem = name[name.rfind("/") + 1 :]
    end = stem.find(".bin")
    if end != -1:
        stem = stem[:end]
    match = _LEADING_INT.match(stem)
    if match is None:
        raise ValueError(f"file name has no leading number: {name!r}")
    return int(match.group(1))


def compare_strings(a: str, b: str) -> bool:
    """Return whether the numbered ``.bin`` file ``a`` sorts before ``b``."""
    return _file_number(a) < _file_number(b)


def find_histogram_counts(
    n_bins: int, values: Sequence[float]
) -> tuple[np.ndarray, np.ndarray]:
    """Count ``values`` into ``n_bins`` equal bins; return counts and edges."""
    if n_bins < 1:
        raise ValueError(f"number of bins must be positive, got {n_bins}")
    vals = np.asarray(values, dtype=np.float64).reshape(-1)
    if vals.size == 0:
        raise ValueError("cannot build a histogram of no values")
    max_val = float(vals.max())
    min_val = float(vals.min())
    bin_size = (max_val - min_val) / n_bins
    edges = np.linspace(min_val, max_val, n_bins + 1)
    counts = np.zeros(n_bins)
    for value in vals:
        if value - min_val < 1e-3:
            index = 0
        elif max_val - value < 1e-3:
            index = n_bins - 1
        else:
            index = math.ceil((value - min_val) / bin_size) - 1
        counts[index] += 1
    return counts, edges


def find_median(values: Sequence[float]) -> float:
    """Median of ``values``; the mean of the two middle values for even sizes."""
    ordered = sorted(float(v) for v in values)
    n = len(ordered)
    if n == 0:
        raise ValueError("cannot take the median of no values")
    if n % 2:
        return ordered[n // 2]
    return (ordered[(n - 1) // 2] + ordered[n // 2]) / 2


def homogeneous(
    roll: float, pitch: float, yaw: float, x: float, y: float, z: float
) -> np.ndarray:
    """4x4 transform from roll, pitch, yaw (radians) and a translation."""
    cr, sr = math.cos(roll), math.sin(roll)
    cp, sp = math.cos(pitch), math.sin(pitch)
    cy, sy = math.cos(yaw), math.sin(yaw)
    return np.array(
        [
            [cy * cp, cy * sp * sr - sy * cr, cy * sp * cr + sy * sr, x],
            [sy * cp, sy * sp * sr + cy * cr, sy * sp * cr - cy * sr, y],
            [-sp, cp * sr, cp * cr, z],
            [0.0, 0.0, 0.0, 1.0],
        ]
    )


def otsu(counts: Sequence[float]) -> int:
    """Otsu threshold of histogram ``counts`` as a 1-based bin level, or -1."""
    hist = np.asarray(counts, dtype=np.float64).reshape(-1)
    level = -1
    total = float(hist.sum())
    sum1 = float(hist @ np.arange(len(hist), dtype=np.float64))
    sum_b = 0.0
    w_b = 0.0
    maximum = 0.0
    for index, count in enumerate(hist):
        w_f = total - w_b
        if w_b > 0 and w_f > 0:
            m_f = (sum1 - sum_b) / w_f
            diff = sum_b / w_b - m_f
            value = w_b * w_f * diff * diff
            if value >= maximum:
                level = index + 1
                maximum = value
        w_b += count
        sum_b += index * count
    return level


def _leading_floats(tokens: Sequence[str]) -> list[float]:
    out = []
    for token in tokens:
        try:
            out.append(float(token))
        except ValueError:
            break
    return out


def read_pose_estimates(path: PathType) -> list[list[float]]:
    """Read KITTI poses (12 values each); a missing file gives no poses."""
    file = Path(path)
    if not file.is_file():
        return []
    numbers = [
        float(np.float32(v)) for v in _leading_floats(file.read_text().split())
    ]
    if len(numbers) % KITTI_COLUMNS:
        raise ValueError(
            f"{file}: {len(numbers)} values is not a whole number of KITTI poses"
        )
    return [
        numbers[start : start + KITTI_COLUMNS]
        for start in range(0, len(numbers), KITTI_COLUMNS)
    ]


def read_pose_tum_estimates(path: PathType) -> list[list[float]]:
    """Read TUM poses and return them as KITTI rows of 12 values."""
    file = Path(path)
    if not file.is_file():
        logger.error("Cannot open file: %s", file)
        return []
    poses = []
    for line in file.read_text().splitlines():
        if not line or line.startswith("#"):
            continue
        tum = _leading_floats(line.split())[:TUM_COLUMNS]
        tum += [0.0] * (TUM_COLUMNS - len(tum))
        quat = np.array([tum[7], tum[4], tum[5], tum[6]])
        norm = float(np.linalg.norm(quat))
        if norm > 0:
            quat = quat / norm
        rot = _quaternion_matrix(*quat)
        pose = np.column_stack([rot, tum[1:4]])
        poses.append([float(v) for v in pose.reshape(-1)])
    return poses


def voxel_hash(voxel: Sequence[int]) -> int:
    """30-bit spatial hash of an integer voxel index."""
    x, y, z = (int(v) & _UINT32 for v in voxel)
    return _HASH_MASK & (
        ((x * _HASH_X) & _UINT32) ^ ((y * _HASH_Y) & _UINT32) ^ ((z * _HASH_Z) & _UINT32)
    )