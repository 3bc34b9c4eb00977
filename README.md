# openlmm

A library for building and cleaning lidar maps from recorded scans and poses.
Point clouds are NumPy arrays of shape `(N, 4)` holding `x, y, z, intensity`;
poses are 4x4 homogeneous matrices.

## What is in it

- `openlmm.pointcloud`: `read_points_from_bin` (KITTI-style little-endian
  float32 quadruples), `read_points_from_pcd` (ASCII, binary and
  binary-compressed PCD), `transform_poses`, `transform_points`,
  `transform_cloud`, `to_xyz`, and `downsample_with_range_filter`, which
  averages the points sharing a voxel and can drop points outside a range.
- `openlmm.pose_conversion`: `kitti_pose_to_isometry` (12 values, a row-major
  3x4 matrix), `tum_pose_to_isometry` (`timestamp tx ty tz qx qy qz qw`) and
  `custom_pose_to_isometry` (always the identity).
- `openlmm.data_loader`: `DataLoaderFile` reads a pose file and a directory of
  scan files, downsamples the scans and fills a `SharedDatabase`.
  `create_data_loader(config)` builds it from a configuration.
- `openlmm.dynamic_remover`: `DynamicRemoverOnline` and
  `DynamicRemoverOffline` drive a remover plugin over posed scans;
  `create_dynamic_remover(config)` chooses one, `load_plugin` builds the
  plugin and `gen_raw_map` merges scans into one world-frame cloud.
- `openlmm.hmm_mos`: online moving object segmentation. `HmmMos` (in
  `remover`) voxelises each scan (`scan.Scan`), updates a voxel map holding a
  hidden Markov state per voxel (`voxel_map.VoxelMap`) and keeps the static
  points. `Scan.write_label` writes SemanticKITTI `.label` files and
  `Scan.write_file` writes the dynamic point indices as a text line.
- `openlmm.erasor`: offline removal. `ErasorServer` (in `server`) voxelises a
  raw map with `voxelgrid_sampling` and refines it scan by scan with the
  ring/sector comparison of `core.ErasorCore`; settings are in
  `config.ErasorConfig`.

## Installation

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from pathlib import Path

from openlmm.data_loader import SharedDatabase, create_data_loader
from openlmm.dynamic_remover import create_dynamic_remover

config = {
    "data_loader": {
        "data_loader_type": "file_based",
        "pose_format": "kitti",
        "scan_type": "bin",
        "scan_dir_name": "velodyne",
        "pose_file_name": "poses.txt",
        "voxel_size": 0.1,
    },
    "dynamic_remover": {
        "dynamic_remover_type": "online",
        "model": "hmm_mos",
    },
}

db = SharedDatabase()
loader = create_data_loader(config)
poses, raw_scans, filtered_scans = loader.process(db, "A", Path("data/seq00"))

remover = create_dynamic_remover(config)
static_map = remover.process(raw_scans, list(enumerate(poses)))
```

`DataLoaderFile.process` stores the poses in `db.odom_poses[agent_id]`, the
filtered scans in `db.scans[agent_id]`, and the merged map, downsampled with
2 m voxels, as `(N, 3)` points in `db.original_maps[agent_id]`. Removers take
the optimized poses as `(index, pose)` pairs.

## Configuration

The configuration is a nested mapping. Missing keys take the defaults shown.

`data_loader` section:

| key | default | meaning |
| --- | --- | --- |
| `data_loader_type` | `""` | must be `file_based` for `create_data_loader` |
| `pose_format` | `""` | `kitti`, `tum` or `custom` |
| `scan_type` | `""` | `pcd` or `bin`; also the scan file extension |
| `scan_dir_name` | `""` | scan directory inside the data directory |
| `pose_file_name` | `""` | pose file inside the data directory |
| `extrinsic` | identity | 12 or 16 values, applied on the left of every pose |
| `voxel_size` | `0.1` | scan downsampling voxel; below 0.01 scans are left as they are |
| `min_range`, `max_range` | `0.0`, `100.0` | range filter for scan points |
| `delimiter` | `" "` | a single character separating pose values |

`dynamic_remover` section: `dynamic_remover_type` (`online` or `offline`) and
`model` (`hmm_mos` or `erasor`). Use `hmm_mos` with `online` and `erasor` with
`offline`. The same section holds the model settings:

- `hmm_mos` (`HmmMosParams`): `replace_intensity` (true), `voxel_size` (0.2),
  `occupancy_sigma` (0.2), `free_sigma` (0.2), `belief_threshold` (0.99),
  `conv_size` (5), `local_window_size` (3), `global_window_size` (300),
  `min_otsu` (3), `max_range` (50), `min_range` (0.5).
- `erasor` (`ErasorConfig`): `max_range` (80), `num_rings` (20),
  `num_sectors` (108), `min_h` (-1.7), `max_h` (3.1),
  `scan_ratio_threshold` (0.2), `minimum_num_pts` (6), `gf_dist_thr` (0.125),
  `gf_iter` (3), `gf_num_lpr` (10), `gf_th_seeds_height` (0.5),
  `num_lowest_pts` (1), `query_voxel_size` (0.1), `map_voxel_size` (0.2),
  `voxelization_interval` (10), `removal_interval` (5), `tf_z` (0.7),
  `replace_intensity` (false).

With `replace_intensity` set, the static map also holds the removed points,
with intensity 1, while kept points carry intensity 0.

## What it does not do

There is no command-line program; the package is used from Python. It does not
detect loops, register scans against each other or optimise a pose graph, so
the `optimized_poses`, `kdtree_poses`, `optimized_maps` and `merged_map`
fields of `SharedDatabase` are left for the caller to fill. It reads scans
and poses from files only and writes no maps to disk.