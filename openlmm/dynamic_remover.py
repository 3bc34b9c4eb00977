"""Removal of moving objects from a set of posed scans.

Online removers process scans one after another and build the static map as
they go. Offline removers first see the whole raw map, then refine it scan by
scan. Both kinds delegate the work to a plugin chosen by model name.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

import numpy as np
from tqdm import tqdm

from openlmm.erasor.config import ErasorConfig
from openlmm.erasor.server import ErasorServer
from openlmm.hmm_mos.params import HmmMosParams
from openlmm.hmm_mos.remover import HmmMos
from openlmm.pointcloud import transform_cloud

logger = logging.getLogger(__name__)

_SECTION = "dynamic_remover"


@runtime_checkable
class OnlineRemoverPlugin(Protocol):
    """A remover fed one sensor-frame scan and its pose at a time."""

    def run(self, scan, pose) -> np.ndarray:
        """Process a scan and return its static points."""

    def static_map(self) -> np.ndarray:
        """Return the static map built so far."""


@runtime_checkable
class OfflineRemoverPlugin(Protocol):
    """A remover that refines a known raw map with world-frame scans."""

    def set_raw_map(self, raw_map) -> None:
        """Store the map to refine."""

    def run(self, scan, pose) -> None:
        """Compare one world-frame scan with the map."""

    def static_map(self) -> np.ndarray:
        """Return the refined map."""


def _poses(optimized_poses: Sequence, count: int) -> list[np.ndarray]:
    poses = [np.asarray(entry[1], dtype=np.float64) for entry in optimized_poses]
    if len(poses) < count:
        raise ValueError(f"{count} scans but only {len(poses)} optimized poses")
    return poses[:count]


def gen_raw_map(scans: Sequence, optimized_poses: Sequence) -> np.ndarray:
    """Merge scans into one world-frame cloud using ``(index, pose)`` pairs."""
    scans = list(scans)
    poses = _poses(optimized_poses, len(scans))
    parts = [transform_cloud(scan, pose) for scan, pose in zip(scans, poses)]
    if not parts:
        return np.empty((0, 4), dtype=np.float32)
    return np.concatenate(parts)


class DynamicRemover(ABC):
    """Turns posed scans into a map without moving objects."""

    @abstractmethod
    def process(self, scans: Sequence, optimized_poses: Sequence) -> np.ndarray:
        """Return the static map of ``scans`` placed at ``optimized_poses``."""


class DynamicRemoverOnline(DynamicRemover):
    """Feeds sensor-frame scans with their poses to an online plugin."""

    def __init__(self, plugin: OnlineRemoverPlugin):
        if not isinstance(plugin, OnlineRemoverPlugin):
            raise TypeError(f"{type(plugin).__name__} is not an online remover plugin")
        self.plugin = plugin

    def process(self, scans: Sequence, optimized_poses: Sequence) -> np.ndarray:
        scans = list(scans)
        poses = _poses(optimized_poses, len(scans))
        for scan, pose in tqdm(
            zip(scans, poses), total=len(scans), desc="Dynamic Remover"
        ):
            self.plugin.run(scan, pose)
        logger.info("Saving static map")
        return self.plugin.static_map()


class DynamicRemoverOffline(DynamicRemover):
    """Gives an offline plugin the raw map, then every world-frame scan."""

    def __init__(self, plugin: OfflineRemoverPlugin):
        if not isinstance(plugin, OfflineRemoverPlugin):
            raise TypeError(f"{type(plugin).__name__} is not an offline remover plugin")
        self.plugin = plugin

    def process(self, scans: Sequence, optimized_poses: Sequence) -> np.ndarray:
        scans = list(scans)
        poses = _poses(optimized_poses, len(scans))
        self.plugin.set_raw_map(gen_raw_map(scans, optimized_poses))
        for scan, pose in tqdm(
            zip(scans, poses), total=len(scans), desc="Dynamic Remover"
        ):
            self.plugin.run(transform_cloud(scan, pose), pose)
        return self.plugin.static_map()


def load_plugin(model: str, config: Mapping[str, Any] | None):
    """Build the remover plugin called ``model`` from the configuration."""
    if model == "hmm_mos":
        return HmmMos(HmmMosParams.from_config(config))
    if model == "erasor":
        return ErasorServer(ErasorConfig.from_config(config))
    raise ValueError(f"Unknown dynamic remover model: {model!r}")


def create_dynamic_remover(config: Mapping[str, Any] | None) -> DynamicRemover:
    """Build the remover named by the ``dynamic_remover`` configuration section."""
    section = (config or {}).get(_SECTION) or {}
    remover_type = str(section.get("dynamic_remover_type", ""))
    model = str(section.get("model", ""))
    if remover_type == "offline":
        return DynamicRemoverOffline(load_plugin(model, config))
    if remover_type == "online":
        return DynamicRemoverOnline(load_plugin(model, config))
    raise ValueError(f"Invalid dynamic remover type: {remover_type}")