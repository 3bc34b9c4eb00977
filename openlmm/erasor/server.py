"""Offline static map building with ERASOR.

The server keeps a voxelised copy of the whole map. Every few scans it cuts
out the volume of interest around the sensor and lets the bin comparison
decide which map points belong to objects that have moved away. Large maps
are handled through a square submap that follows the sensor.
"""

from __future__ import annotations

import numpy as np

from openlmm.erasor.config import ErasorConfig
from openlmm.erasor.core import ErasorCore, _as_cloud, _concat, _empty_cloud

SUBMAP_SIZE = 200.0


def voxelgrid_sampling(cloud, leaf_size: float) -> np.ndarray:
    """Average the points (coordinates and intensity) that share a voxel.

    Voxel indices are the floor of the coordinates over ``leaf_size``. Output
    points follow the order in which their voxels were first seen.
    """
    if leaf_size <= 0:
        raise ValueError(f"leaf size must be positive, got {leaf_size}")
    pts = _as_cloud(cloud)
    if len(pts) == 0:
        return _empty_cloud()
    keys = np.floor(pts[:, :3].astype(np.float64) / leaf_size).astype(np.int64)
    _, first, inverse, counts = np.unique(
        keys, axis=0, return_index=True, return_inverse=True, return_counts=True
    )
    inverse = inverse.reshape(-1)
    sums = np.zeros((len(first), 4), dtype=np.float64)
    np.add.at(sums, inverse, pts)
    means = (sums / counts[:, None]).astype(np.float32)
    return means[np.argsort(first, kind="stable")]


def _as_pose(pose) -> np.ndarray:
    mat = np.asarray(pose, dtype=np.float64)
    if mat.shape != (4, 4):
        raise ValueError(f"pose must be a 4x4 matrix, got {mat.shape}")
    return mat


class ErasorServer:
    """Offline remover: set the raw map once, then feed world-frame scans."""

    def __init__(self, config: ErasorConfig | None = None):
        self.config = config if config is not None else ErasorConfig()
        if self.config.removal_interval < 1:
            raise ValueError(
                f"removal interval must be positive, got {self.config.removal_interval}"
            )
        self.core = ErasorCore(self.config)
        self.scan_num = 0
        self._map_arranged: np.ndarray | None = None
        self._map_arranged_global = _empty_cloud()
        self._map_arranged_complement = _empty_cloud()
        self._map_static_and_dynamic = _empty_cloud()
        self._num_pcs_init = 0
        self._submap_center: tuple[float, float] | None = None
        self._half_size = SUBMAP_SIZE / 2.0

    def set_raw_map(self, raw_map) -> None:
        """Voxelise and store the map that later scans are compared against."""
        self._map_arranged = voxelgrid_sampling(raw_map, self.config.map_voxel_size)
        self._num_pcs_init = len(self._map_arranged)
        if self.config.is_large_scale:
            self._map_arranged_global = self._map_arranged.copy()

    def _require_map(self) -> np.ndarray:
        if self._map_arranged is None:
            raise RuntimeError("the raw map has not been set")
        return self._map_arranged

    def run(self, scan, pose) -> None:
        """Compare one world-frame scan taken at ``pose`` with the map."""
        self._require_map()
        mat = _as_pose(pose)
        self.scan_num += 1
        if self.scan_num % self.config.removal_interval != 0:
            return

        query = voxelgrid_sampling(scan, self.config.query_voxel_size)
        x, y, z = (float(np.float32(v)) for v in mat[:3, 3])

        if self.config.is_large_scale:
            self._reassign_submap(x, y)

        query_voi, map_voi, outskirts = self._fetch_voi(x, y, query)

        self.core.set_center(x, y, z)
        self.core.set_inputs(map_voi, query_voi)
        self.core.compare_vois_and_revert_ground()
        static, dynamic, complement = self.core.get_static_estimate()

        self._map_static_and_dynamic = _concat([self._map_static_and_dynamic, dynamic]).copy()
        self._map_arranged = _concat([static, outskirts, complement]).copy()

    def _fetch_voi(
        self, x: float, y: float, query: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        if self.config.mode != "naive":
            return _empty_cloud(), _empty_cloud(), _empty_cloud()
        max_dist_sq = self.config.max_range**2

        def dist_sq(pts: np.ndarray) -> np.ndarray:
            xyz = pts[:, :3].astype(np.float64)
            return (xyz[:, 0] - x) ** 2 + (xyz[:, 1] - y) ** 2

        query_voi = query[dist_sq(query) < max_dist_sq].copy()
        arranged = self._require_map()
        inside = dist_sq(arranged) < max_dist_sq
        map_voi = arranged[inside].copy()
        outskirts = arranged[~inside].copy()
        if self.config.replace_intensity and len(outskirts):
            outskirts[:, 3] = 0.0
        return query_voi, map_voi, outskirts

    def _reassign_submap(self, x: float, y: float) -> None:
        if self._submap_center is None:
            self._set_submap(self._map_arranged_global, x, y)
            self._submap_center = (x, y)
            return
        cx, cy = self._submap_center
        if abs(cx - x) > self._half_size or abs(cy - y) > self._half_size:
            self._map_arranged_global = _concat(
                [self._require_map(), self._map_arranged_complement]
            ).copy()
            self._set_submap(self._map_arranged_global, x, y)
            self._submap_center = (x, y)

    def _set_submap(self, map_global: np.ndarray, x: float, y: float) -> None:
        xyz = map_global[:, :3].astype(np.float64)
        near = (np.abs(x - xyz[:, 0]) < SUBMAP_SIZE) & (np.abs(y - xyz[:, 1]) < SUBMAP_SIZE)
        self._map_arranged = map_global[near].copy()
        self._map_arranged_complement = map_global[~near].copy()

    def static_map(self) -> np.ndarray:
        """The map with moved objects removed.

        With ``replace_intensity`` the removed points are appended too, carrying
        intensity 1 while the kept points carry intensity 0.
        """
        parts = [self._require_map()]
        if self.config.is_large_scale:
            parts.append(self._map_arranged_complement)
        if len(self._map_static_and_dynamic) and self.config.replace_intensity:
            parts.append(self._map_static_and_dynamic)
        return _concat(parts).copy()