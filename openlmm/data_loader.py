"""Loading of agent trajectories and scans from a directory of files."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import Any, Union

import numpy as np
from tqdm import tqdm

from openlmm.pointcloud import (
    downsample_with_range_filter,
    read_points_from_bin,
    read_points_from_pcd,
    to_xyz,
    transform_cloud,
)
from openlmm.pose_conversion import (
    custom_pose_to_isometry,
    kitti_pose_to_isometry,
    tum_pose_to_isometry,
)

PathType = Union[str, "PathLike[str]"]
PoseConverter = Callable[[Sequence[float]], np.ndarray]
ScanReader = Callable[[PathType], np.ndarray]

_POSE_CONVERTERS: dict[str, PoseConverter] = {
    "kitti": kitti_pose_to_isometry,
    "tum": tum_pose_to_isometry,
    "custom": custom_pose_to_isometry,
}

_SCAN_READERS: dict[str, ScanReader] = {
    "pcd": read_points_from_pcd,
    "bin": read_points_from_bin,
}

MAP_VOXEL_SIZE = 2.0


@dataclass
class SharedDatabase:
    """Data shared between processing stages, keyed by agent id."""

    merged_map: np.ndarray = field(default_factory=lambda: np.empty((0, 3), dtype=np.float32))
    original_maps: dict[str, np.ndarray] = field(default_factory=dict)
    optimized_maps: dict[str, np.ndarray] = field(default_factory=dict)
    scans: dict[str, list[np.ndarray]] = field(default_factory=dict)
    odom_poses: dict[str, list[np.ndarray]] = field(default_factory=dict)
    optimized_poses: dict[str, list[tuple[int, np.ndarray]]] = field(default_factory=dict)
    kdtree_poses: dict[str, list[np.ndarray]] = field(default_factory=dict)


def _section(config: Mapping[str, Any] | None, name: str) -> Mapping[str, Any]:
    if not config:
        return {}
    return config.get(name) or {}


def _extrinsic(value: Any) -> np.ndarray:
    if value is None:
        return np.eye(4)
    arr = np.asarray(value, dtype=np.float64)
    if arr.size == 16:
        return arr.reshape(4, 4)
    if arr.size == 12:
        mat = np.eye(4)
        mat[:3, :] = arr.reshape(3, 4)
        return mat
    raise ValueError(f"extrinsic must hold 12 or 16 values, got {arr.size}")


@dataclass
class DataLoaderFileParams:
    """Settings of the file based data loader."""

    data_loader_type: str = ""
    pose_file_name: str = ""
    pose_format: str = ""
    scan_type: str = ""
    scan_dir_name: str = ""
    extrinsic: np.ndarray = field(default_factory=lambda: np.eye(4))
    voxel_size: float = 0.1
    min_range: float = 0.0
    max_range: float = 100.0
    delimiter: str = " "

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "DataLoaderFileParams":
        """Read the ``data_loader`` section of a nested configuration mapping."""
        section = _section(config, "data_loader")
        return cls(
            data_loader_type=str(section.get("data_loader_type", "")),
            pose_file_name=str(section.get("pose_file_name", "")),
            pose_format=str(section.get("pose_format", "")),
            scan_type=str(section.get("scan_type", "")),
            scan_dir_name=str(section.get("scan_dir_name", "")),
            extrinsic=_extrinsic(section.get("extrinsic")),
            voxel_size=float(section.get("voxel_size", 0.1)),
            min_range=float(section.get("min_range", 0.0)),
            max_range=float(section.get("max_range", 100.0)),
            delimiter=str(section.get("delimiter", " ")),
        )


class DataLoader(ABC):
    """Loads an agent's poses and scans into the shared database."""

    @abstractmethod
    def process(
        self, shared_data: SharedDatabase, agent_id: str, data_dir: PathType
    ) -> tuple[list[np.ndarray], list[np.ndarray], list[np.ndarray]]:
        """Load everything for one agent; return poses, raw and filtered scans."""

    @abstractmethod
    def load_pose_data(self, data_dir: PathType) -> list[np.ndarray]:
        """Load the agent's poses."""

    @abstractmethod
    def load_raw_scan_data(self, data_dir: PathType) -> list[np.ndarray]:
        """Load the agent's scans as stored."""

    @abstractmethod
    def load_filtered_scan_data(self, data_dir: PathType) -> list[np.ndarray]:
        """Load the agent's scans after downsampling and range filtering."""


def _remove_nan(cloud: np.ndarray) -> np.ndarray:
    if len(cloud) == 0:
        return cloud
    return cloud[np.isfinite(cloud[:, :3]).all(axis=1)]


def _split_line(line: str, delimiter: str) -> list[float]:
    tokens = line.split(delimiter)
    if tokens and tokens[-1] == "":
        tokens.pop()
    return [float(token) for token in tokens]


class DataLoaderFile(DataLoader):
    """Reads a pose file and a directory of scan files."""

    def __init__(self, params: DataLoaderFileParams):
        self.params = params
        try:
            self.pose_converter: PoseConverter = _POSE_CONVERTERS[params.pose_format]
        except KeyError:
            raise ValueError(f"unsupported pose format: {params.pose_format}") from None
        try:
            self.scan_reader: ScanReader = _SCAN_READERS[params.scan_type]
        except KeyError:
            if params.pose_format == "custom":
                raise ValueError(f"scan type not implemented: {params.scan_type}") from None
            raise ValueError(f"unsupported scan type: {params.scan_type}") from None

    def process(
        self, shared_data: SharedDatabase, agent_id: str, data_dir: PathType
    ) -> tuple[list[np.ndarray], list[np.ndarray], list[np.ndarray]]:
        poses = self.load_pose_data(data_dir)
        raw_scans = self.load_raw_scan_data(data_dir)
        filtered_scans = self._filter_scans(raw_scans)
        if len(poses) < len(filtered_scans):
            raise ValueError(
                f"{len(filtered_scans)} scans but only {len(poses)} poses in {data_dir}"
            )
        shared_data.odom_poses[agent_id] = poses
        shared_data.scans[agent_id] = filtered_scans

        if filtered_scans:
            merged = np.concatenate(
                [transform_cloud(scan, pose) for scan, pose in zip(filtered_scans, poses)]
            )
        else:
            merged = np.empty((0, 4), dtype=np.float32)
        merged = _remove_nan(merged)

        map_ds = downsample_with_range_filter(merged, MAP_VOXEL_SIZE, 0.0, 0.0, False)
        shared_data.original_maps[agent_id] = to_xyz(_remove_nan(map_ds))
        return poses, raw_scans, filtered_scans

    def load_pose_data(self, data_dir: PathType) -> list[np.ndarray]:
        pose_file = Path(data_dir) / self.params.pose_file_name
        if not pose_file.exists():
            raise FileNotFoundError(f"invalid pose file path: {pose_file}")
        delimiter = self.params.delimiter
        if len(delimiter) != 1:
            raise ValueError(f"invalid delimiter: {delimiter!r}")

        lines = pose_file.read_text().split("\n")
        if lines and lines[-1] == "":
            lines.pop()
        extrinsic = np.asarray(self.params.extrinsic, dtype=np.float64)
        return [extrinsic @ self.pose_converter(_split_line(line, delimiter)) for line in lines]

    def load_raw_scan_data(self, data_dir: PathType) -> list[np.ndarray]:
        scan_dir = Path(data_dir) / self.params.scan_dir_name
        if not scan_dir.is_dir():
            raise FileNotFoundError(f"invalid scan dir path: {scan_dir}")
        scan_files = sorted(
            path
            for path in scan_dir.iterdir()
            if path.is_file() and path.suffix[1:] == self.params.scan_type
        )
        return [self.scan_reader(path) for path in scan_files]

    def load_filtered_scan_data(self, data_dir: PathType) -> list[np.ndarray]:
        return self._filter_scans(self.load_raw_scan_data(data_dir))

    def _filter_scans(self, raw_scans: list[np.ndarray]) -> list[np.ndarray]:
        params = self.params
        return [
            downsample_with_range_filter(
                scan, params.voxel_size, params.min_range, params.max_range
            )
            for scan in tqdm(raw_scans, desc="Data Loader")
        ]


def create_data_loader(config: Mapping[str, Any] | None) -> DataLoader:
    """Build the data loader named by ``data_loader.data_loader_type``."""
    loader_type = str(_section(config, "data_loader").get("data_loader_type", ""))
    if loader_type == "file_based":
        return DataLoaderFile(DataLoaderFileParams.from_config(config))
    raise ValueError(f"invalid data loader type: {loader_type}")