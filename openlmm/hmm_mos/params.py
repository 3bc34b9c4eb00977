"""Settings of the HMM based moving object segmentation."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

_SECTION = "dynamic_remover"


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass
class HmmMosParams:
    """Parameters read from the ``dynamic_remover`` configuration section."""

    replace_intensity: bool = True
    voxel_size: float = 0.2
    occupancy_sigma: float = 0.2
    free_sigma: float = 0.2
    belief_threshold: float = 0.99
    conv_size: int = 5
    local_window_size: int = 3
    global_window_size: int = 300
    min_otsu: int = 3
    max_range: float = 50.0
    min_range: float = 0.5

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "HmmMosParams":
        """Build parameters from a nested mapping, falling back to defaults."""
        section = (config or {}).get(_SECTION) or {}
        defaults = cls()
        return cls(
            replace_intensity=_as_bool(
                section.get("replace_intensity", defaults.replace_intensity)
            ),
            voxel_size=float(section.get("voxel_size", defaults.voxel_size)),
            occupancy_sigma=float(section.get("occupancy_sigma", defaults.occupancy_sigma)),
            free_sigma=float(section.get("free_sigma", defaults.free_sigma)),
            belief_threshold=float(
                section.get("belief_threshold", defaults.belief_threshold)
            ),
            conv_size=int(section.get("conv_size", defaults.conv_size)),
            local_window_size=int(
                section.get("local_window_size", defaults.local_window_size)
            ),
            global_window_size=int(
                section.get("global_window_size", defaults.global_window_size)
            ),
            min_otsu=int(section.get("min_otsu", defaults.min_otsu)),
            max_range=float(section.get("max_range", defaults.max_range)),
            min_range=float(section.get("min_range", defaults.min_range)),
        )