"""Recursively updated voxel map that tracks a hidden Markov state per voxel.

Each voxel carries a belief over three states (unobserved, occupied, free)
that is updated from a Gaussian distance field built from every scan. The
map is then used to score the voxels of a scan and segment moving objects.
"""

from __future__ import annotations

import itertools
import math
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

import numpy as np
from scipy.spatial import cKDTree

from openlmm.hmm_mos.params import HmmMosParams
from openlmm.hmm_mos.scan import Scan, Voxel
from openlmm.hmm_mos.utils import find_histogram_counts, find_median, otsu

UNOBSERVED = 0
OCCUPIED = 1
FREE = 2

NUM_STATES = 3
TRANSITION_EPSILON = 0.005
HISTOGRAM_BINS = 100
MAP_RANGE_FACTOR = 1.5


def _offsets(edge: int) -> list[Voxel]:
    return list(itertools.product(range(-edge, edge + 1), repeat=3))


def _shift(voxel: Voxel, offset: Voxel) -> Voxel:
    return (voxel[0] + offset[0], voxel[1] + offset[1], voxel[2] + offset[2])


def _transition_matrix(epsilon: float) -> np.ndarray:
    return np.array(
        [
            [1.0 - 2 * epsilon, 0.0, 0.0],
            [epsilon, 1.0 - epsilon, epsilon],
            [epsilon, epsilon, 1.0 - epsilon],
        ]
    )


@dataclass
class HmmConfig:
    """Hidden Markov model settings shared by all voxels."""

    state_transition_matrix: np.ndarray = field(
        default_factory=lambda: _transition_matrix(TRANSITION_EPSILON)
    )
    sig_occ: float = 0.2
    belief_threshold: float = 0.99
    num_states: int = NUM_STATES


@dataclass
class MapVoxelState:
    """What the map knows about one voxel."""

    closest_distance: float = 0.0
    current_state: int = UNOBSERVED
    current_state_scan: int = 0
    is_dynamic: bool = False
    last_state_change_scan: list[int] = field(default_factory=lambda: [0, 0])
    scan_last_seen: int = 0
    x_hat: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0]))


class VoxelMap:
    """Voxel map updated scan by scan within a sliding global window."""

    def __init__(self, params: HmmMosParams):
        self.global_win_len = int(params.global_window_size)
        self.max_range_sqr = (float(params.max_range) * MAP_RANGE_FACTOR) ** 2
        self.voxel_size = float(params.voxel_size)
        self.conv_size = int(params.conv_size)
        self.min_otsu = float(params.min_otsu)
        self.n_bins = HISTOGRAM_BINS
        self.edge = int((self.conv_size - 1) / 2)
        self.hmm_config = HmmConfig(
            state_transition_matrix=_transition_matrix(TRANSITION_EPSILON),
            sig_occ=float(params.occupancy_sigma),
            belief_threshold=float(params.belief_threshold),
        )
        self.norm_dist_occ_den = 1.0 / (2.0 * self.hmm_config.sig_occ**2)

        self.scan_num = 0
        self.sensor_pose = np.eye(4)
        self.voxels: dict[Voxel, MapVoxelState] = {}
        self.prev_scan_dynamic_voxels: list[Voxel] = []
        self.scan_dynamic_voxels: list[Voxel] = []

        self._conv_offsets = _offsets(self.edge)
        self._nn_offsets = _offsets(1)

    def __contains__(self, voxel) -> bool:
        return tuple(int(v) for v in voxel) in self.voxels

    def __getitem__(self, voxel) -> MapVoxelState:
        return self.voxels[tuple(int(v) for v in voxel)]

    def __len__(self) -> int:
        return len(self.voxels)

    def _add_voxels(self, voxels: Iterable[Voxel]) -> None:
        for voxel in voxels:
            state = self.voxels.get(voxel)
            if state is None:
                self.voxels[voxel] = MapVoxelState(current_state_scan=self.scan_num)
            else:
                state.current_state_scan = self.scan_num

    def update(self, scan: Scan, scan_num: int) -> None:
        """Integrate the observed voxels of ``scan`` into the map."""
        self.scan_num = int(scan_num)
        self.sensor_pose = np.array(scan.sensor_pose, dtype=np.float64)

        observed = list(scan.observed_voxels)
        self._add_voxels(observed)

        if observed:
            window = np.asarray(scan.pts_occupied_over_window, dtype=np.float64)
            distances = None
            if len(window):
                centers = np.array(observed, dtype=np.float64) * self.voxel_size
                dist, _ = cKDTree(window).query(centers, k=1)
                distances = np.square(dist)

            transition = self.hmm_config.state_transition_matrix
            threshold = self.hmm_config.belief_threshold
            for index, voxel in enumerate(observed):
                state = self.voxels[voxel]
                if distances is not None:
                    state.closest_distance = float(distances[index])
                g = math.exp(-state.closest_distance * self.norm_dist_occ_den)
                alpha = np.array([0.0, g, 1.0 - g]) * (transition @ state.x_hat)
                state.x_hat = alpha / alpha.sum()
                state.scan_last_seen = self.scan_num

                x = state.x_hat
                best = 0 if x[0] > x[1] else 1
                best = 2 if x[2] > x[best] else best
                if x[best] > threshold:
                    if (
                        best != state.current_state
                        and best != UNOBSERVED
                        and state.current_state != UNOBSERVED
                    ):
                        state.last_state_change_scan[0] = state.last_state_change_scan[1]
                        state.last_state_change_scan[1] = self.scan_num
                    state.current_state = best
                state.current_state_scan = self.scan_num

        self._remove_voxels_outside_window_and_max_range()

    def _remove_voxels_outside_window_and_max_range(self) -> None:
        if not self.voxels:
            return
        keys = list(self.voxels)
        centers = np.array(keys, dtype=np.float64) * self.voxel_size
        diff = centers - self.sensor_pose[:3, 3]
        far = np.einsum("ij,ij->i", diff, diff) > self.max_range_sqr
        win = self.global_win_len
        for key, is_far in zip(keys, far):
            last_seen = self.voxels[key].scan_last_seen
            if is_far or (win < last_seen < self.scan_num - win):
                del self.voxels[key]

    def find_median_value(self, scan: Scan) -> None:
        """Replace each voxel's score by the median over its 3x3x3 neighbourhood."""
        states = scan.states
        medians: dict[Voxel, float] = {}
        for voxel in scan.occupied_voxels:
            scores = [
                states[n].conv_score
                for n in (_shift(voxel, off) for off in self._nn_offsets)
                if n in states
            ]
            medians[voxel] = float(int(find_median(scores)))
        for voxel, value in medians.items():
            states[voxel].conv_score = value

    def find_dynamic_voxels(self, scan: Scan, scan_history: deque) -> None:
        """Score the scan against the map and mark its dynamic voxels."""
        states = scan.states
        for voxel in scan.occupied_voxels:
            total = 0.0
            for offset in self._conv_offsets:
                neighbour = _shift(voxel, offset)
                state = self.voxels.get(neighbour)
                if (
                    state is not None
                    and state.current_state != UNOBSERVED
                    and self.scan_num - state.current_state_scan < self.global_win_len
                ):
                    if (
                        state.last_state_change_scan[1] == self.scan_num
                        and neighbour in states
                    ):
                        total += 1
                else:
                    total -= 1
            states[voxel].conv_score = max(total, 0.0)

        self.find_median_value(scan)
        scan_history.append(scan.copy())

        for past in scan_history:
            for voxel in past.occupied_voxels:
                if voxel in states:
                    states[voxel].conv_score_over_window += past.states[voxel].conv_score

        scan.dyn_threshold = 0.0
        if not scan.occupied_voxels:
            self.scan_dynamic_voxels = []
            self.prev_scan_dynamic_voxels = []
            return

        scores = [states[voxel].conv_score_over_window for voxel in scan.occupied_voxels]
        counts, edges = find_histogram_counts(self.n_bins, scores)
        level = otsu(counts)
        if level > 0:
            threshold = float(edges[level - 1])
            scan.dyn_threshold = threshold
            for voxel in scan.occupied_voxels:
                if states[voxel].conv_score_over_window > threshold:
                    scan.set_dynamic_high_confidence(voxel)

        for voxel in self.prev_scan_dynamic_voxels:
            if voxel in states and states[voxel].conv_score_over_window > self.min_otsu:
                scan.set_dynamic_high_confidence(voxel)

        self.scan_dynamic_voxels = [
            _shift(voxel, offset)
            for voxel in scan.occupied_voxels
            if scan.is_dynamic_high_confidence(voxel)
            for offset in self._nn_offsets
        ]
        for voxel in self.scan_dynamic_voxels:
            if voxel in states:
                scan.set_dynamic_high_confidence(voxel)

        self.prev_scan_dynamic_voxels = [
            voxel
            for voxel in scan.occupied_voxels
            if scan.is_dynamic_high_confidence(voxel)
        ]