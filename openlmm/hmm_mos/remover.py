"""Online dynamic point removal with the HMM based segmentation."""

from __future__ import annotations

from collections import deque

import numpy as np

from openlmm.hmm_mos.params import HmmMosParams
from openlmm.hmm_mos.scan import Scan
from openlmm.hmm_mos.voxel_map import VoxelMap


class HmmMos:
    """Feeds scans through the voxel map and accumulates a static map."""

    def __init__(self, params: HmmMosParams | None = None):
        self.params = params if params is not None else HmmMosParams()
        self.scan_num = 0
        self._scan = Scan(self.params)
        self._map = VoxelMap(self.params)
        self._history: deque[Scan] = deque(maxlen=max(int(self.params.local_window_size), 0))
        self._static_parts: list[np.ndarray] = []

    def run(self, scan, pose) -> np.ndarray:
        """Process one sensor-frame ``(N, 4)`` scan; return its static world points."""
        current = self._scan
        current.read_cloud(scan, pose)
        current.voxelize()
        self._map.update(current, self.scan_num)

        if self.scan_num > self.params.local_window_size:
            self._map.find_dynamic_voxels(current, self._history)
        else:
            self._history.append(current.copy())

        static_points = current.global_static_points()
        self._static_parts.append(static_points)
        if self.params.replace_intensity:
            self._static_parts.append(current.global_dynamic_points())

        self.scan_num += 1
        return static_points

    def static_map(self) -> np.ndarray:
        """All points kept so far, in the world frame."""
        if not self._static_parts:
            return np.empty((0, 4), dtype=np.float32)
        return np.concatenate(self._static_parts)