from collections import deque
from dataclasses import replace

import numpy as np

from openlmm.hmm_mos.params import HmmMosParams
from openlmm.hmm_mos.scan import Scan
from openlmm.hmm_mos.voxel_map import FREE, OCCUPIED, VoxelMap


def _cloud(points):
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return np.column_stack([pts, np.zeros(len(pts))])


def _feed(scan, vmap, points, num, pose=None):
    scan.read_cloud(_cloud(points), np.eye(4) if pose is None else pose)
    scan.voxelize()
    vmap.update(scan, num)


def test_transition_matrix_columns_sum_to_one():
    vmap = VoxelMap(HmmMosParams())
    matrix = vmap.hmm_config.state_transition_matrix
    np.testing.assert_allclose(matrix.sum(axis=0), np.ones(3))


def test_update_marks_occupied_and_free_voxels():
    params = HmmMosParams()
    scan, vmap = Scan(params), VoxelMap(params)
    _feed(scan, vmap, [(2.05, 0.05, 0.05)], 0)
    assert vmap[(10, 0, 0)].current_state == OCCUPIED
    assert vmap[(0, 0, 0)].current_state == FREE
    assert set(scan.observed_voxels) <= set(vmap.voxels)
    for state in vmap.voxels.values():
        assert abs(state.x_hat.sum() - 1.0) < 1e-9


def test_state_change_is_recorded():
    params = HmmMosParams()
    scan, vmap = Scan(params), VoxelMap(params)
    _feed(scan, vmap, [(2.05, 0.05, 0.05)], 0)
    _feed(scan, vmap, [(4.05, 0.05, 0.05)], 1)
    assert vmap[(10, 0, 0)].current_state == OCCUPIED
    _feed(scan, vmap, [(4.05, 0.05, 0.05)], 2)
    state = vmap[(10, 0, 0)]
    assert state.current_state == FREE
    assert state.last_state_change_scan[1] == 2
    assert state.scan_last_seen == 2


def test_voxels_far_from_sensor_are_removed():
    params = HmmMosParams()
    scan, vmap = Scan(params), VoxelMap(params)
    _feed(scan, vmap, [(2.05, 0.05, 0.05)], 0)
    assert (10, 0, 0) in vmap
    pose = np.eye(4)
    pose[0, 3] = 200.0
    _feed(scan, vmap, [(2.05, 0.05, 0.05)], 1, pose)
    assert (10, 0, 0) not in vmap
    assert (1010, 0, 0) in vmap


def test_find_median_value_keeps_middle_score():
    params = HmmMosParams()
    scan, vmap = Scan(params), VoxelMap(params)
    _feed(scan, vmap, [(2.05, 0.05, 0.05), (2.25, 0.05, 0.05), (2.45, 0.05, 0.05)], 0)
    for voxel, score in zip([(10, 0, 0), (11, 0, 0), (12, 0, 0)], [0.0, 3.0, 9.0]):
        scan[voxel].conv_score = score
    vmap.find_median_value(scan)
    assert scan[(11, 0, 0)].conv_score == 3.0
    for voxel in scan.occupied_voxels:
        value = scan[voxel].conv_score
        assert value == int(value)
        assert 0.0 <= value <= 9.0


def test_static_scene_has_no_dynamic_voxels():
    params = HmmMosParams()
    scan, vmap = Scan(params), VoxelMap(params)
    history = deque(maxlen=params.local_window_size)
    points = [(2.05, 0.05, 0.05), (2.05, 1.05, 0.05), (0.05, 3.05, 0.05)]
    for num in range(6):
        _feed(scan, vmap, points, num)
        vmap.find_dynamic_voxels(scan, history)
        assert scan.dyn_threshold == 0
        assert not any(scan.is_dynamic_high_confidence(v) for v in scan.occupied_voxels)
        assert len(scan.global_dynamic_points()) == 0
    assert vmap.prev_scan_dynamic_voxels == []


def test_history_is_bounded_and_holds_copies():
    params = replace(HmmMosParams(), local_window_size=2)
    scan, vmap = Scan(params), VoxelMap(params)
    history = deque(maxlen=params.local_window_size)
    for num in range(3):
        _feed(scan, vmap, [(2.05, 0.05, 0.05)], num)
        vmap.find_dynamic_voxels(scan, history)
    assert len(history) == 2
    assert all(entry is not scan for entry in history)
    assert all(set(entry.occupied_voxels) == set(scan.occupied_voxels) for entry in history)


def test_empty_scan_gives_zero_threshold():
    params = HmmMosParams()
    scan, vmap = Scan(params), VoxelMap(params)
    history = deque(maxlen=params.local_window_size)
    scan.read_cloud(np.empty((0, 4)), np.eye(4))
    scan.voxelize()
    vmap.update(scan, 0)
    vmap.find_dynamic_voxels(scan, history)
    assert scan.dyn_threshold == 0
    assert len(history) == 1
    assert len(vmap) == 0