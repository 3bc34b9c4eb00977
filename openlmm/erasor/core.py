"""Region-wise pseudo-occupancy comparison between a map and a query scan.

The volume around the sensor is split into rings and sectors. Each bin keeps
the height span of its points; comparing the spans of the map and of the
current scan tells which map bins hold objects that have since moved away.
Points are ``(N, 4)`` float32 arrays of ``x, y, z, intensity``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum

import numpy as np

from openlmm.erasor.config import ErasorConfig

INF = 10000000000000.0
PI = 3.1415926535
GROUND_RETRIEVAL_HEIGHT = 0.5


class BinStatus(Enum):
    """Outcome of the bin comparison; NOT_ASSIGNED shares LITTLE_NUM's value."""

    LITTLE_NUM = 0.0
    NOT_ASSIGNED = 0.0
    MERGE_BINS = 0.25
    MAP_IS_HIGHER = 0.5
    BLOCKED = 0.8
    CURR_IS_HIGHER = 1.0


def _empty_cloud() -> np.ndarray:
    return np.empty((0, 4), dtype=np.float32)


def _as_cloud(cloud) -> np.ndarray:
    arr = np.asarray(cloud, dtype=np.float32)
    if arr.size == 0:
        return _empty_cloud()
    if arr.ndim != 2 or arr.shape[1] != 4:
        raise ValueError(f"point cloud must have shape (N, 4), got {arr.shape}")
    return arr


def _concat(parts: list[np.ndarray]) -> np.ndarray:
    parts = [p for p in parts if len(p)]
    return np.concatenate(parts) if parts else _empty_cloud()


def _shift(cloud: np.ndarray, offset: np.ndarray) -> np.ndarray:
    out = cloud.copy()
    if len(out):
        out[:, :3] = (cloud[:, :3].astype(np.float64) + offset).astype(np.float32)
    return out


def _ratio(a: float, b: float) -> float:
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.float64(a) / np.float64(b))


def _first_min(a: float, b: float) -> float:
    return b if b < a else a


@dataclass
class Bin:
    """Points and height span of one ring/sector cell."""

    max_h: float = -INF
    min_h: float = INF
    x: float = 0.0
    y: float = 0.0
    status: BinStatus = BinStatus.NOT_ASSIGNED
    is_occupied: bool = False
    points: np.ndarray = field(default_factory=_empty_cloud)


class ErasorCore:
    """Compares map and query volumes of interest bin by bin."""

    def __init__(self, config: ErasorConfig):
        if config.num_rings < 1 or config.num_sectors < 1:
            raise ValueError("numbers of rings and sectors must be positive")
        if config.max_range <= 0:
            raise ValueError(f"max range must be positive, got {config.max_range}")
        self.config = config
        self.ring_size = config.max_range / config.num_rings
        self.sector_size = 2 * PI / config.num_sectors
        self.center = np.zeros(3)

        self.r_pod_map = self._new_pod()
        self.r_pod_curr = self._new_pod()
        self.r_pod_selected = self._new_pod()
        self.map_complement = _empty_cloud()
        self.dynamic_viz = _empty_cloud()
        self.ground_viz = _empty_cloud()

        self._normal = np.array([0.0, 0.0, 1.0])
        self._d = 0.0
        self._th_dist_d = config.th_dist

    def _new_pod(self) -> list[list[Bin]]:
        cfg = self.config
        return [[Bin() for _ in range(cfg.num_sectors)] for _ in range(cfg.num_rings)]

    def set_center(self, x: float, y: float, z: float) -> None:
        """Set the sensor position the bins are laid out around."""
        self.center = np.array([float(x), float(y), float(z)])

    def set_inputs(self, map_voi, query_voi) -> None:
        """Bin the world-frame map and query volumes of interest."""
        map_pts = _as_cloud(map_voi)
        query_pts = _as_cloud(query_voi)
        self.r_pod_map = self._new_pod()
        self.r_pod_curr = self._new_pod()
        self.r_pod_selected = self._new_pod()
        self._fill(query_pts, self.r_pod_curr)
        self.map_complement = self._fill(map_pts, self.r_pod_map)

    def _fill(self, pts: np.ndarray, pod: list[list[Bin]]) -> np.ndarray:
        """Distribute points into bins; return those that fall outside."""
        cfg = self.config
        if len(pts) == 0:
            return _empty_cloud()
        cx, cy, cz = self.center
        xyz = pts[:, :3].astype(np.float64)
        z_rel = xyz[:, 2] - cz + cfg.tf_z
        dx = xyz[:, 0] - cx
        dy = xyz[:, 1] - cy
        radius = np.sqrt(dx * dx + dy * dy)
        inside = (z_rel < cfg.max_h) & (z_rel > cfg.min_h) & (radius <= cfg.max_range)

        theta = np.arctan2(dy, dx)
        theta = np.where(dy >= 0, theta, 2 * PI + theta)
        idx = np.flatnonzero(inside)
        sector = np.minimum(
            np.trunc(theta[idx] / self.sector_size).astype(np.int64), cfg.num_sectors - 1
        )
        ring = np.minimum(
            np.trunc(radius[idx] / self.ring_size).astype(np.int64), cfg.num_rings - 1
        )
        keys = ring * cfg.num_sectors + sector
        order = np.argsort(keys, kind="stable")
        sorted_keys = keys[order]
        unique_keys, starts = np.unique(sorted_keys, return_index=True)
        bounds = list(starts[1:]) + [len(order)]
        for key, start, stop in zip(unique_keys, starts, bounds):
            members = idx[order[start:stop]]
            heights = z_rel[members]
            top = len(heights) - 1 - int(np.argmax(heights[::-1]))
            r, t = divmod(int(key), cfg.num_sectors)
            pod[r][t] = Bin(
                max_h=float(heights[top]),
                min_h=float(heights.min()),
                x=float(xyz[members[top], 0]),
                y=float(xyz[members[top], 1]),
                status=BinStatus.NOT_ASSIGNED,
                is_occupied=True,
                points=pts[members].copy(),
            )
        return pts[~inside].copy()

    def compare_vois_and_revert_ground(self) -> None:
        """Classify every bin and recover ground points from removed map bins."""
        cfg = self.config
        for theta in range(cfg.num_sectors):
            for r in range(cfg.num_rings):
                curr = self.r_pod_curr[r][theta]
                mp = self.r_pod_map[r][theta]
                selected = self.r_pod_selected[r][theta]
                if len(mp.points) == 0:
                    selected.status = BinStatus.LITTLE_NUM
                    continue
                if len(curr.points) < cfg.minimum_num_pts:
                    selected.status = BinStatus.LITTLE_NUM
                    continue
                map_diff = mp.max_h - mp.min_h
                curr_diff = curr.max_h - curr.min_h
                scan_ratio = _first_min(_ratio(map_diff, curr_diff), _ratio(curr_diff, map_diff))
                if curr.is_occupied and mp.is_occupied:
                    if scan_ratio < cfg.scan_ratio_threshold:
                        if map_diff >= curr_diff:
                            selected.status = BinStatus.MAP_IS_HIGHER
                        elif map_diff <= curr_diff:
                            selected.status = BinStatus.CURR_IS_HIGHER
                    else:
                        selected.status = BinStatus.MERGE_BINS
                elif mp.is_occupied:
                    selected.status = BinStatus.LITTLE_NUM

        ground_parts: list[np.ndarray] = []
        dynamic_parts: list[np.ndarray] = []
        for theta in range(cfg.num_sectors):
            for r in range(cfg.num_rings):
                curr = self.r_pod_curr[r][theta]
                mp = self.r_pod_map[r][theta]
                status = self.r_pod_selected[r][theta].status
                if status is BinStatus.LITTLE_NUM:
                    new = replace(mp, status=BinStatus.LITTLE_NUM)
                elif status is BinStatus.MAP_IS_HIGHER:
                    if mp.max_h - mp.min_h > GROUND_RETRIEVAL_HEIGHT:
                        new = replace(curr, status=BinStatus.MAP_IS_HIGHER)
                        ground, non_ground = self._extract_ground(mp.points)
                        ground_parts.append(ground)
                        dynamic_parts.append(non_ground)
                    else:
                        new = replace(mp, status=BinStatus.NOT_ASSIGNED)
                elif status is BinStatus.CURR_IS_HIGHER:
                    new = replace(mp, status=BinStatus.CURR_IS_HIGHER)
                elif status is BinStatus.MERGE_BINS:
                    blocked = self._is_dynamic_obj_close(r, theta)
                    new = replace(
                        mp, status=BinStatus.BLOCKED if blocked else BinStatus.MERGE_BINS
                    )
                else:
                    continue
                self.r_pod_selected[r][theta] = new
        self.ground_viz = _concat(ground_parts)
        self.dynamic_viz = _concat(dynamic_parts)

    def _is_dynamic_obj_close(self, r_target: int, theta_target: int) -> bool:
        cfg = self.config
        # Wrap-around deliberately uses the ring count, as the reference does.
        candidates = []
        for j in (theta_target - 1, theta_target, theta_target + 1):
            if j < 0:
                candidates.append(j + cfg.num_rings)
            elif j >= cfg.num_sectors:
                candidates.append(j - cfg.num_rings)
            else:
                candidates.append(j)
        for r in range(max(0, r_target - 1), min(r_target + 1, cfg.num_rings - 1) + 1):
            for theta in candidates:
                if r == r_target and theta == theta_target:
                    continue
                if not 0 <= theta < cfg.num_sectors:
                    continue
                if self.r_pod_selected[r][theta].status is BinStatus.CURR_IS_HIGHER:
                    return True
        return False

    def _extract_ground(self, src: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        cfg = self.config
        offset = np.array([cfg.tf_x, cfg.tf_y, cfg.tf_z]) - self.center
        shifted = _shift(src, offset)
        src_copy = shifted[np.argsort(shifted[:, 2], kind="stable")]
        below = int(np.count_nonzero(src_copy[:, 2] < cfg.min_h))
        # Sorted ascending, so the points under min_h form a prefix.
        src_copy = src_copy[below:]

        ground = self._extract_initial_seeds(src_copy)
        non_ground = _empty_cloud()
        xyz = shifted[:, :3].astype(np.float64)
        for i in range(cfg.iter_groundfilter):
            self._estimate_plane(ground)
            result = xyz @ self._normal
            mask = result < self._th_dist_d
            ground = shifted[mask]
            if i == cfg.iter_groundfilter - 1:
                non_ground = shifted[~mask]
        return _shift(ground, -offset), _shift(non_ground, -offset)

    def _extract_initial_seeds(self, p_sorted: np.ndarray) -> np.ndarray:
        cfg = self.config
        if len(p_sorted) == 0:
            return _empty_cloud()
        heights = p_sorted[:, 2].astype(np.float64) - self.center[2] + cfg.tf_z
        start = max(cfg.num_lowest_pts, 0)
        lows = heights[start : start + max(cfg.num_lprs, 0)]
        lpr_height = float(lows.sum() / len(lows)) if len(lows) else 0.0
        return p_sorted[heights < lpr_height + cfg.th_seeds_heights].copy()

    def _estimate_plane(self, ground: np.ndarray) -> None:
        if len(ground) == 0:
            return
        xyz = ground[:, :3].astype(np.float64)
        mean = xyz.mean(axis=0)
        centred = xyz - mean
        cov = centred.T @ centred / len(xyz)
        u, _, _ = np.linalg.svd(cov)
        normal = u[:, 2]
        # A singular vector's sign is arbitrary; keep the ground normal pointing up.
        if normal[2] < 0:
            normal = -normal
        self._normal = normal
        self._d = -float(normal @ mean)
        self._th_dist_d = self.config.th_dist - self._d

    def get_static_estimate(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return the static points, the removed points and the unbinned map points.

        The removed points are only reported when ``replace_intensity`` is set;
        then static points carry intensity 0 and removed points intensity 1.
        """
        cfg = self.config
        parts = [
            self.r_pod_selected[r][theta].points
            for theta in range(cfg.num_sectors)
            for r in range(cfg.num_rings)
            if self.r_pod_selected[r][theta].is_occupied
        ]
        arranged = _concat(parts + [self.ground_viz]).copy()
        complement = self.map_complement.copy()
        dynamic = _empty_cloud()
        if cfg.replace_intensity:
            arranged[:, 3] = 0.0
            dynamic = self.dynamic_viz.copy()
            dynamic[:, 3] = 1.0
            complement[:, 3] = 0.0
        return arranged, dynamic, complement