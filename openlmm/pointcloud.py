"""Point cloud helpers: rigid transforms, voxel downsampling and scan readers.

A point cloud is an ``(N, 4)`` float32 array of ``x, y, z, intensity`` rows.
Poses and transforms are 4x4 homogeneous matrices.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable
from os import PathLike
from typing import Union

import numpy as np

PathType = Union[str, "PathLike[str]"]

_PCD_TYPES = {
    ("F", 4): "<f4",
    ("F", 8): "<f8",
    ("U", 1): "u1",
    ("U", 2): "<u2",
    ("U", 4): "<u4",
    ("U", 8): "<u8",
    ("I", 1): "i1",
    ("I", 2): "<i2",
    ("I", 4): "<i4",
    ("I", 8): "<i8",
}


def _empty_cloud() -> np.ndarray:
    return np.empty((0, 4), dtype=np.float32)


def _as_cloud(cloud) -> np.ndarray:
    arr = np.asarray(cloud, dtype=np.float32)
    if arr.size == 0:
        return _empty_cloud()
    if arr.ndim != 2 or arr.shape[1] != 4:
        raise ValueError(f"point cloud must have shape (N, 4), got {arr.shape}")
    return arr


def _as_matrix(transform, dtype) -> np.ndarray:
    mat = np.asarray(transform, dtype=dtype)
    if mat.shape != (4, 4):
        raise ValueError(f"transform must be a 4x4 matrix, got {mat.shape}")
    return mat


def transform_poses(poses: Iterable, transform) -> list[np.ndarray]:
    """Left-multiply every pose by ``transform``; results are float32."""
    mat = _as_matrix(transform, np.float32)
    return [mat @ _as_matrix(pose, np.float64).astype(np.float32) for pose in poses]


def transform_points(points, transform) -> np.ndarray:
    """Apply a homogeneous transform to an ``(N, 3)`` array of points."""
    mat = _as_matrix(transform, np.float32)
    pts = np.asarray(points, dtype=np.float32)
    if pts.size == 0:
        return np.empty((0, 3), dtype=np.float32)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError(f"points must have shape (N, 3), got {pts.shape}")
    return (pts @ mat[:3, :3].T + mat[:3, 3]).astype(np.float32)


def transform_cloud(cloud, pose) -> np.ndarray:
    """Transform the coordinates of a cloud by ``pose``, keeping intensities."""
    pts = _as_cloud(cloud)
    mat = _as_matrix(pose, np.float64)
    out = pts.copy()
    if len(pts):
        xyz = pts[:, :3].astype(np.float64)
        out[:, :3] = (xyz @ mat[:3, :3].T + mat[:3, 3]).astype(np.float32)
    return out


def downsample_with_range_filter(
    cloud,
    voxel_size: float,
    min_range: float = 2.0,
    max_range: float = 100.0,
    use_range_filter: bool = True,
) -> np.ndarray:
    """Average points that share a voxel, optionally dropping points by range.

    A voxel size below 0.01 leaves the cloud untouched and returns it as is.
    Output points follow the order in which their voxels were first seen.
    """
    if voxel_size < 0.01:
        return cloud

    pts = _as_cloud(cloud)
    if use_range_filter and len(pts):
        xyz = pts[:, :3]
        range_sq = np.einsum("ij,ij->i", xyz, xyz)
        keep = (range_sq >= min_range * min_range) & (range_sq <= max_range * max_range)
        pts = pts[keep]
    if len(pts) == 0:
        return _empty_cloud()

    loc = pts[:, :3] * np.float32(1.0 / voxel_size)
    loc = np.where(loc < 0, loc - np.float32(1.0), loc)
    keys = np.trunc(loc).astype(np.int64)

    _, first, inverse, counts = np.unique(
        keys, axis=0, return_index=True, return_inverse=True, return_counts=True
    )
    inverse = inverse.reshape(-1)
    sums = np.zeros((len(first), 4), dtype=np.float64)
    np.add.at(sums, inverse, pts)
    means = (sums / counts[:, None]).astype(np.float32)
    return means[np.argsort(first, kind="stable")]


def to_xyz(cloud) -> np.ndarray:
    """Return the ``(N, 3)`` coordinates of a cloud."""
    return _as_cloud(cloud)[:, :3].copy()


def read_points_from_bin(path: PathType) -> np.ndarray:
    """Read a KITTI-style binary scan of little-endian float32 quadruples."""
    data = np.fromfile(path, dtype="<f4")
    count = len(data) // 4
    return data[: count * 4].reshape(count, 4).astype(np.float32)


def _lzf_decompress(data: bytes, expected_size: int) -> bytes:
    out = bytearray()
    pos = 0
    size = len(data)
    while pos < size:
        ctrl = data[pos]
        pos += 1
        if ctrl < 32:
            length = ctrl + 1
            if pos + length > size:
                raise ValueError("corrupt LZF stream: literal run past end")
            out += data[pos : pos + length]
            pos += length
            continue
        length = ctrl >> 5
        ref = len(out) - ((ctrl & 0x1F) << 8) - 1
        if length == 7:
            if pos >= size:
                raise ValueError("corrupt LZF stream: truncated length")
            length += data[pos]
            pos += 1
        if pos >= size:
            raise ValueError("corrupt LZF stream: truncated offset")
        ref -= data[pos]
        pos += 1
        length += 2
        if ref < 0:
            raise ValueError("corrupt LZF stream: back reference before start")
        for _ in range(length):
            out.append(out[ref])
            ref += 1
    if len(out) != expected_size:
        raise ValueError(
            f"LZF stream decompressed to {len(out)} bytes, expected {expected_size}"
        )
    return bytes(out)


def _read_pcd_header(handle) -> dict[str, list[str]]:
    header: dict[str, list[str]] = {}
    while True:
        line = handle.readline()
        if not line:
            raise ValueError("PCD file has no DATA line")
        text = line.decode("ascii", errors="replace").strip()
        if not text or text.startswith("#"):
            continue
        key, _, rest = text.partition(" ")
        key = key.upper()
        header[key] = rest.split()
        if key == "DATA":
            return header


def read_points_from_pcd(path: PathType) -> np.ndarray:
    """Read ``x, y, z, intensity`` from a PCD file (ascii, binary or compressed)."""
    with open(path, "rb") as handle:
        header = _read_pcd_header(handle)
        body = handle.read()

    fields = header.get("FIELDS")
    if not fields:
        raise ValueError("PCD header has no FIELDS")
    sizes = [int(s) for s in header.get("SIZE", ["4"] * len(fields))]
    types = [t.upper() for t in header.get("TYPE", ["F"] * len(fields))]
    counts = [int(c) for c in header.get("COUNT", ["1"] * len(fields))]
    if not len(fields) == len(sizes) == len(types) == len(counts):
        raise ValueError("PCD header FIELDS, SIZE, TYPE and COUNT disagree")
    if "POINTS" in header:
        num_points = int(header["POINTS"][0])
    else:
        num_points = int(header.get("WIDTH", ["0"])[0]) * int(header.get("HEIGHT", ["1"])[0])
    mode = header["DATA"][0].lower() if header["DATA"] else ""

    columns: dict[str, np.ndarray] = {}
    if mode == "ascii":
        rows = [line.split() for line in body.decode("ascii", errors="replace").splitlines()]
        rows = [row for row in rows if row][:num_points]
        table = np.array(rows, dtype=np.float64).reshape(len(rows), sum(counts))
        offset = 0
        for name, count in zip(fields, counts):
            columns.setdefault(name, table[:, offset])
            offset += count
    elif mode in ("binary", "binary_compressed"):
        bases = []
        for kind, size in zip(types, sizes):
            try:
                bases.append(np.dtype(_PCD_TYPES[(kind, size)]))
            except KeyError:
                raise ValueError(f"unsupported PCD field type {kind}{size}") from None
        if mode == "binary":
            layout = np.dtype(
                [
                    (f"f{i}", base, (count,)) if count > 1 else (f"f{i}", base)
                    for i, (base, count) in enumerate(zip(bases, counts))
                ]
            )
            records = np.frombuffer(body, dtype=layout, count=num_points)
            for i, name in enumerate(fields):
                values = records[f"f{i}"]
                columns.setdefault(name, values[:, 0] if values.ndim > 1 else values)
        else:
            if len(body) < 8:
                raise ValueError("PCD compressed block is truncated")
            compressed_size, raw_size = struct.unpack("<II", body[:8])
            raw = _lzf_decompress(body[8 : 8 + compressed_size], raw_size)
            offset = 0
            for name, base, count in zip(fields, bases, counts):
                nbytes = base.itemsize * count * num_points
                values = np.frombuffer(raw[offset : offset + nbytes], dtype=base)
                values = values.reshape(num_points, count)[:, 0]
                columns.setdefault(name, values)
                offset += nbytes
    else:
        raise ValueError(f"unsupported PCD data mode: {mode!r}")

    missing = [axis for axis in ("x", "y", "z") if axis not in columns]
    if missing:
        raise ValueError(f"PCD file lacks fields: {', '.join(missing)}")
    n = len(columns["x"])
    intensity = columns.get("intensity", np.zeros(n))
    return np.column_stack(
        [columns["x"], columns["y"], columns["z"], intensity]
    ).astype(np.float32)