"""Voxelised lidar scan with ray casting, used for moving object segmentation.

A scan is read from points and a sensor pose, transformed into the world frame
and quantised into voxels. Ray casting from the sensor marks every voxel seen
on the way to an occupied one, and voxels beyond the maximum range are dropped.
"""

from __future__ import annotations

import copy as _copy
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import TextIO, Union

import numpy as np

from openlmm.hmm_mos.params import HmmMosParams

PathType = Union[str, "PathLike[str]"]
Voxel = tuple[int, int, int]

STATIC_LABEL = 9
DYNAMIC_LABEL = 251


def _voxel(voxel: Iterable) -> Voxel:
    x, y, z = (int(v) for v in voxel)
    return (x, y, z)


def _empty_points() -> np.ndarray:
    return np.empty((0, 3), dtype=np.float64)


@dataclass
class ScanVoxelState:
    """What a scan knows about one of its voxels."""

    is_dynamic: bool = False
    is_dynamic_high_confidence: bool = False
    point_indices: list[int] = field(default_factory=list)
    conv_score: float = 0.0
    conv_score_over_window: float = 0.0


class Scan:
    """A voxelised scan in the world frame."""

    def __init__(self, params: HmmMosParams):
        if params.voxel_size <= 0:
            raise ValueError(f"voxel size must be positive, got {params.voxel_size}")
        self.voxel_size = float(params.voxel_size)
        self.min_range_sqr = float(params.min_range) ** 2
        self.max_range = float(params.max_range)
        self.max_range_sqr = self.max_range**2
        self.min_otsu = float(params.min_otsu)

        self.sensor_pose = np.eye(4)
        self.observed_voxels: list[Voxel] = []
        self.occupied_voxels: list[Voxel] = []
        self.pts_occupied = _empty_points()
        self.pts_occupied_over_window = _empty_points()
        self.dyn_threshold = 0.0
        self.states: dict[Voxel, ScanVoxelState] = {}
        self.points = _empty_points()

        window = max(int(params.local_window_size), 0)
        self._pts_history: deque[np.ndarray] = deque(
            (_empty_points() for _ in range(window)), maxlen=window
        )

    def __contains__(self, voxel) -> bool:
        return _voxel(voxel) in self.states

    def __getitem__(self, voxel) -> ScanVoxelState:
        return self.states[_voxel(voxel)]

    def copy(self) -> "Scan":
        """Independent deep copy of the scan."""
        return _copy.deepcopy(self)

    def _set_points(self, xyz: np.ndarray, pose) -> None:
        mat = np.array(pose, dtype=np.float64)
        if mat.shape != (4, 4):
            raise ValueError(f"pose must be a 4x4 matrix, got {mat.shape}")
        mat[3, :] = (0.0, 0.0, 0.0, 1.0)
        self.sensor_pose = mat
        if len(xyz) == 0:
            self.points = _empty_points()
        else:
            self.points = xyz @ mat[:3, :3].T + mat[:3, 3]

    def read_scan(self, path: PathType, pose: Sequence[float]) -> None:
        """Read a KITTI ``.bin`` scan and place it with a 12-value KITTI pose."""
        values = [float(v) for v in pose]
        if len(values) < 12:
            raise ValueError(f"KITTI pose needs 12 values, got {len(values)}")
        mat = np.eye(4)
        mat[:3, :] = np.reshape(values[:12], (3, 4))
        data = np.fromfile(Path(path), dtype="<f4")
        count = len(data) // 4
        xyz = data[: count * 4].reshape(count, 4)[:, :3].astype(np.float64)
        self._set_points(xyz, mat)

    def read_cloud(self, cloud, pose) -> None:
        """Take an ``(N, 4)`` cloud and place it with a 4x4 pose."""
        arr = np.asarray(cloud, dtype=np.float64)
        if arr.size == 0:
            xyz = _empty_points()
        else:
            if arr.ndim != 2 or arr.shape[1] < 3:
                raise ValueError(f"cloud must have shape (N, 4), got {arr.shape}")
            xyz = arr[:, :3].copy()
        self._set_points(xyz, pose)

    def voxelize(self) -> None:
        """Rebuild voxels, ray cast observed voxels and drop those out of range."""
        self.pts_occupied = _empty_points()
        self.occupied_voxels = []
        self.observed_voxels = []
        self.states = {}
        self._add_points_with_index()
        self.find_observed_voxels()
        self.remove_voxels_outside_max_range()

    def _add_points_with_index(self) -> None:
        pts = self.points
        occupied: list[Voxel] = []
        if len(pts):
            diff = pts - self.sensor_pose[:3, 3]
            dist_sq = np.einsum("ij,ij->i", diff, diff)
            keys = np.trunc(pts / self.voxel_size).astype(np.int64)
            for index in np.flatnonzero(dist_sq > self.min_range_sqr):
                voxel = _voxel(keys[index])
                state = self.states.get(voxel)
                if state is None:
                    state = ScanVoxelState()
                    self.states[voxel] = state
                    self.occupied_voxels.append(voxel)
                    occupied.append(voxel)
                state.point_indices.append(int(index))
        self.pts_occupied = (
            np.asarray(occupied, dtype=np.float64).reshape(-1, 3) * self.voxel_size
        )
        previous = self._pts_history[-1] if self._pts_history else _empty_points()
        self.pts_occupied_over_window = np.vstack([self.pts_occupied, previous])
        self._pts_history.append(self.pts_occupied)

    def find_observed_voxels(self) -> None:
        """Collect the unique voxels crossed by rays from the sensor (3D Bresenham)."""
        self.observed_voxels = []
        if not self.occupied_voxels:
            return
        start = np.floor(self.sensor_pose[:3, 3] / self.voxel_size).astype(np.int64)
        end = np.array(self.occupied_voxels, dtype=np.int64)
        step = np.where(start < end, 1, -1)
        delta = np.abs(end - start)
        dm = delta.max(axis=1)
        acc = np.repeat((dm // 2)[:, None], 3, axis=1)
        pos = np.repeat(start[None, :], len(end), axis=0)

        rays, orders, cells = [], [], []
        for n in range(int(dm.max()) + 1):
            diff = (start - pos) * self.voxel_size
            norm = np.einsum("ij,ij->i", diff, diff)
            record = np.flatnonzero((dm >= n) & (norm <= self.max_range_sqr))
            rays.append(record)
            orders.append(np.full(len(record), n))
            cells.append(pos[record])
            acc = acc - delta
            wrap = acc < 0
            acc = acc + wrap * dm[:, None]
            pos = pos + wrap * step

        ray_ids = np.concatenate(rays)
        if len(ray_ids) == 0:
            return
        all_cells = np.concatenate(cells)[np.lexsort((np.concatenate(orders), ray_ids))]
        _, first = np.unique(all_cells, axis=0, return_index=True)
        first.sort()
        self.observed_voxels = [_voxel(cell) for cell in all_cells[first]]

    def remove_voxels_outside_max_range(self) -> None:
        """Drop voxels whose centre lies beyond the maximum range of the sensor."""
        if not self.states:
            self.occupied_voxels = []
            return
        order = list(self.states)
        centers = np.array(order, dtype=np.float64) * self.voxel_size
        diff = centers - self.sensor_pose[:3, 3]
        far = np.einsum("ij,ij->i", diff, diff) > self.max_range_sqr
        to_remove = [key for key, is_far in zip(order, far) if is_far]

        # Erasure moves the last entry into the freed slot, which fixes the order.
        position = {key: index for index, key in enumerate(order)}
        for key in to_remove:
            index = position.pop(key)
            last = order.pop()
            if last != key:
                order[index] = last
                position[last] = index
        self.states = {key: self.states[key] for key in order}
        self.occupied_voxels = list(order)

    def set_dynamic(self, voxel) -> None:
        self.states.setdefault(_voxel(voxel), ScanVoxelState()).is_dynamic = True

    def set_dynamic_high_confidence(self, voxel) -> None:
        state = self.states.setdefault(_voxel(voxel), ScanVoxelState())
        state.is_dynamic = True
        state.is_dynamic_high_confidence = True

    def is_dynamic_high_confidence(self, voxel) -> bool:
        state = self.states.get(_voxel(voxel))
        return state is not None and state.is_dynamic and state.is_dynamic_high_confidence

    def indices(self, voxel) -> list[int]:
        """Indices of the scan points that fall into ``voxel``."""
        state = self.states.get(_voxel(voxel))
        return list(state.point_indices) if state is not None else []

    def _segmented(self) -> bool:
        return self.dyn_threshold > self.min_otsu

    def _dynamic_indices(self) -> set[int]:
        if not self._segmented():
            return set()
        return {
            index
            for state in self.states.values()
            if state.is_dynamic
            for index in state.point_indices
        }

    def write_file(self, stream: TextIO, scan_num: int) -> None:
        """Write one line: the 1-based scan number, then the dynamic point indices."""
        parts = [str(scan_num + 1)]
        if self._segmented():
            for state in self.states.values():
                if state.is_dynamic:
                    parts.extend(str(index) for index in state.point_indices)
        stream.write(",".join(parts) + "\n")

    def write_label(self, folder: PathType, scan_num: int) -> Path:
        """Write a SemanticKITTI ``.label`` file for the scan and return its path."""
        labels = np.full(len(self.points), STATIC_LABEL, dtype=np.uint32)
        dynamic = sorted(self._dynamic_indices())
        if dynamic:
            labels[dynamic] = DYNAMIC_LABEL
        labels &= 0xFFFF
        path = Path(folder) / f"{scan_num:06d}.label"
        labels.astype("<u4").tofile(path)
        return path

    def _cloud(self, indices: Iterable[int], intensity: float) -> np.ndarray:
        selected = sorted(indices)
        if not selected:
            return np.empty((0, 4), dtype=np.float32)
        xyz = self.points[selected]
        column = np.full((len(selected), 1), intensity)
        return np.hstack([xyz, column]).astype(np.float32)

    def global_static_points(self) -> np.ndarray:
        """World-frame static points with intensity 0."""
        if self._segmented():
            indices = {
                index
                for state in self.states.values()
                if not state.is_dynamic
                for index in state.point_indices
            }
        else:
            indices = {
                index for state in self.states.values() for index in state.point_indices
            }
        return self._cloud(indices, 0.0)

    def global_dynamic_points(self) -> np.ndarray:
        """World-frame dynamic points with intensity 1."""
        return self._cloud(self._dynamic_indices(), 1.0)