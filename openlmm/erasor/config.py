"""Settings of the ERASOR static map builder."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

_SECTION = "dynamic_remover"


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


_KEYS: tuple[tuple[str, str, Callable[[Any], Any]], ...] = (
    ("max_range", "max_range", float),
    ("num_rings", "num_rings", int),
    ("num_sectors", "num_sectors", int),
    ("min_h", "min_h", float),
    ("max_h", "max_h", float),
    ("scan_ratio_threshold", "scan_ratio_threshold", float),
    ("minimum_num_pts", "minimum_num_pts", int),
    ("th_dist", "gf_dist_thr", float),
    ("iter_groundfilter", "gf_iter", int),
    ("num_lprs", "gf_num_lpr", int),
    ("th_seeds_heights", "gf_th_seeds_height", float),
    ("num_lowest_pts", "num_lowest_pts", int),
    ("query_voxel_size", "query_voxel_size", float),
    ("map_voxel_size", "map_voxel_size", float),
    ("global_voxelization_period", "voxelization_interval", int),
    ("removal_interval", "removal_interval", int),
    ("tf_z", "tf_z", float),
    ("replace_intensity", "replace_intensity", _as_bool),
)


@dataclass
class ErasorConfig:
    """Parameters of the region-wise pseudo-occupancy comparison."""

    map_voxel_size: float = 0.2
    query_voxel_size: float = 0.1
    global_voxelization_period: int = 10

    max_range: float = 80.0
    num_rings: int = 20
    num_sectors: int = 108
    min_h: float = -1.7
    max_h: float = 3.1
    scan_ratio_threshold: float = 0.2

    th_seeds_heights: float = 0.5
    th_dist: float = 0.125
    num_lprs: int = 10
    minimum_num_pts: int = 6
    iter_groundfilter: int = 3
    num_lowest_pts: int = 1
    verbose: bool = True

    mode: str = "naive"
    replace_intensity: bool = False
    removal_interval: int = 5

    # Lidar to body offset.
    tf_x: float = 0.0
    tf_y: float = 0.0
    tf_z: float = 0.7

    is_large_scale: bool = False

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "ErasorConfig":
        """Read the ``dynamic_remover`` section of a nested mapping."""
        section = (config or {}).get(_SECTION) or {}
        values = {
            name: convert(section[key])
            for name, key, convert in _KEYS
            if key in section
        }
        return cls(**values)