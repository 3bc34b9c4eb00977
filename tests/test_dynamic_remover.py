import numpy as np
import pytest

from openlmm.dynamic_remover import (
    DynamicRemoverOffline,
    DynamicRemoverOnline,
    create_dynamic_remover,
    gen_raw_map,
    load_plugin,
)
from openlmm.pointcloud import transform_cloud


def _ground(z=-0.7):
    coords = np.arange(5.0, 7.01, 0.25)
    xs, ys = np.meshgrid(coords, coords)
    n = xs.size
    return np.column_stack(
        [xs.ravel(), ys.ravel(), np.full(n, z), np.ones(n)]
    ).astype(np.float32)


def _column():
    zs = np.arange(0.3, 1.51, 0.25)
    n = len(zs)
    return np.column_stack([np.full(n, 6.0), np.full(n, 6.0), zs, np.ones(n)]).astype(
        np.float32
    )


def _translation(x, y, z):
    pose = np.eye(4)
    pose[:3, 3] = (x, y, z)
    return pose


class RecordingOnline:
    def __init__(self):
        self.calls = []
        self.result = np.zeros((3, 4), dtype=np.float32)

    def run(self, scan, pose):
        self.calls.append((np.array(scan), np.array(pose)))
        return np.array(scan)

    def static_map(self):
        return self.result


class RecordingOffline(RecordingOnline):
    def __init__(self):
        super().__init__()
        self.raw_map = None

    def set_raw_map(self, raw_map):
        self.raw_map = np.array(raw_map)


def test_gen_raw_map_merges_transformed_scans():
    scans = [_ground(), _column()]
    poses = [(0, _translation(1.0, 2.0, 3.0)), (1, _translation(-1.0, 0.0, 0.5))]
    raw = gen_raw_map(scans, poses)
    expected = np.vstack(
        [transform_cloud(scans[0], poses[0][1]), transform_cloud(scans[1], poses[1][1])]
    )
    np.testing.assert_allclose(raw, expected)


def test_gen_raw_map_needs_a_pose_per_scan():
    with pytest.raises(ValueError):
        gen_raw_map([_ground(), _ground()], [(0, np.eye(4))])


def test_online_passes_sensor_frame_scans():
    plugin = RecordingOnline()
    remover = DynamicRemoverOnline(plugin)
    pose = _translation(1.0, 0.0, 0.0)
    result = remover.process([_ground()], [(0, pose)])
    assert result is plugin.result
    assert len(plugin.calls) == 1
    np.testing.assert_allclose(plugin.calls[0][0], _ground())
    np.testing.assert_allclose(plugin.calls[0][1], pose)


def test_offline_passes_raw_map_and_world_frame_scans():
    plugin = RecordingOffline()
    remover = DynamicRemoverOffline(plugin)
    scans = [_ground(), _column()]
    poses = [(0, _translation(0.0, 1.0, 0.0)), (1, _translation(2.0, 0.0, 0.0))]
    result = remover.process(scans, poses)
    assert result is plugin.result
    np.testing.assert_allclose(plugin.raw_map, gen_raw_map(scans, poses))
    assert len(plugin.calls) == 2
    for (scan, pose), (given, _) in zip(zip(scans, poses), plugin.calls):
        np.testing.assert_allclose(given, transform_cloud(scan, pose[1]))


def test_offline_rejects_online_only_plugin():
    with pytest.raises(TypeError):
        DynamicRemoverOffline(RecordingOnline())


def test_unknown_type_raises():
    with pytest.raises(ValueError):
        create_dynamic_remover(
            {"dynamic_remover": {"dynamic_remover_type": "sideways", "model": "erasor"}}
        )


def test_unknown_model_raises():
    with pytest.raises(ValueError):
        load_plugin("nothing", {})


def test_online_hmm_mos_keeps_points_in_range():
    remover = create_dynamic_remover(
        {"dynamic_remover": {"dynamic_remover_type": "online", "model": "hmm_mos"}}
    )
    scan = _ground()
    result = remover.process([scan, scan], [(0, np.eye(4)), (1, np.eye(4))])
    assert result.shape == (2 * len(scan), 4)
    assert np.all(result[:, 3] == 0.0)


def test_offline_erasor_removes_moved_object():
    remover = create_dynamic_remover(
        {
            "dynamic_remover": {
                "dynamic_remover_type": "offline",
                "model": "erasor",
                "removal_interval": 1,
            }
        }
    )
    scans = [np.vstack([_ground(), _column()]), _ground()]
    result = remover.process(scans, [(0, np.eye(4)), (1, np.eye(4))])
    assert len(result) > 0
    assert np.count_nonzero(result[:, 2] > 0.0) == 0