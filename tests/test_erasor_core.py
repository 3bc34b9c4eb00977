import numpy as np
import pytest

from openlmm.erasor.config import ErasorConfig
from openlmm.erasor.core import BinStatus, ErasorCore


def _patch(cx, cy, z=0.0, intensity=0.5):
    xs = np.linspace(cx - 0.5, cx + 0.5, 4)
    ys = np.linspace(cy - 0.5, cy + 0.5, 4)
    return [[x, y, z, intensity] for x in xs for y in ys]


def _column(cx, cy, heights, intensity=0.5):
    return [[cx, cy, h, intensity] for h in heights]


def _cloud(rows):
    return np.array(rows, dtype=np.float32)


def _sorted_rows(arr):
    return arr[np.lexsort(arr.T[::-1])]


def _small_config(**kwargs):
    return ErasorConfig(num_rings=2, num_sectors=4, max_range=10.0, **kwargs)


def test_invalid_layout_raises():
    with pytest.raises(ValueError):
        ErasorCore(ErasorConfig(num_rings=0))


def test_wrong_cloud_shape_raises():
    core = ErasorCore(_small_config())
    with pytest.raises(ValueError):
        core.set_inputs(np.zeros((3, 3)), np.zeros((3, 4)))


def test_identical_inputs_keep_every_map_point():
    rng = np.random.default_rng(0)
    pts = np.column_stack(
        [
            rng.uniform(-12, 12, 400),
            rng.uniform(-12, 12, 400),
            rng.uniform(-3, 3, 400),
            rng.uniform(0, 1, 400),
        ]
    ).astype(np.float32)
    core = ErasorCore(_small_config(replace_intensity=False))
    core.set_inputs(pts, pts)
    core.compare_vois_and_revert_ground()
    arranged, dynamic, complement = core.get_static_estimate()
    assert len(dynamic) == 0
    merged = np.vstack([arranged, complement])
    np.testing.assert_array_equal(_sorted_rows(merged), _sorted_rows(pts))
    radius = np.hypot(complement[:, 0], complement[:, 1])
    z_rel = complement[:, 2].astype(np.float64) + 0.7
    assert np.all((radius > 10.0) | (z_rel >= 3.1) | (z_rel <= -1.7))


def test_vanished_object_is_removed_and_ground_kept():
    map_pts = _cloud(_patch(6, 6) + _column(6, 6, [1.0, 1.5, 2.0]))
    query = _cloud(_patch(6, 6))
    core = ErasorCore(_small_config(replace_intensity=True))
    core.set_inputs(map_pts, query)
    core.compare_vois_and_revert_ground()
    assert core.r_pod_selected[1][0].status is BinStatus.MAP_IS_HIGHER
    arranged, dynamic, complement = core.get_static_estimate()
    assert len(dynamic) == 3
    np.testing.assert_allclose(np.sort(dynamic[:, 2]), [1.0, 1.5, 2.0], atol=1e-5)
    assert np.all(dynamic[:, 3] == 1.0)
    assert len(arranged) == 2 * len(query)
    assert np.max(np.abs(arranged[:, 2])) < 1e-5
    assert np.all(arranged[:, 3] == 0.0)
    assert len(complement) == 0


def test_bin_next_to_appearing_object_is_blocked():
    map_pts = _cloud(_patch(6, 6) + _patch(-6, 6))
    query = _cloud(_patch(6, 6) + _column(6, 6, [1.0, 1.5, 2.0]) + _patch(-6, 6))
    core = ErasorCore(_small_config())
    core.set_inputs(map_pts, query)
    core.compare_vois_and_revert_ground()
    assert core.r_pod_selected[1][0].status is BinStatus.CURR_IS_HIGHER
    assert core.r_pod_selected[1][1].status is BinStatus.BLOCKED
    arranged, dynamic, _ = core.get_static_estimate()
    assert len(dynamic) == 0
    np.testing.assert_array_equal(_sorted_rows(arranged), _sorted_rows(map_pts))


def test_center_moves_the_volume_of_interest():
    pts = _cloud(_patch(106, 106))
    far = ErasorCore(_small_config())
    far.set_inputs(pts, pts)
    far.compare_vois_and_revert_ground()
    arranged, _, complement = far.get_static_estimate()
    assert len(arranged) == 0
    assert len(complement) == len(pts)

    near = ErasorCore(_small_config())
    near.set_center(100.0, 100.0, 0.0)
    near.set_inputs(pts, pts)
    near.compare_vois_and_revert_ground()
    arranged, _, complement = near.get_static_estimate()
    np.testing.assert_array_equal(_sorted_rows(arranged), _sorted_rows(pts))
    assert len(complement) == 0


def test_set_inputs_replaces_previous_bins():
    pts = _cloud(_patch(6, 6) + _patch(-6, -6))
    core = ErasorCore(_small_config())
    for _ in range(2):
        core.set_inputs(pts, pts)
        core.compare_vois_and_revert_ground()
        arranged, _, _ = core.get_static_estimate()
        assert len(arranged) == len(pts)


def test_bin_height_span_tracks_points():
    pts = _cloud(_column(6, 6, [0.0, 1.0, 2.0]))
    core = ErasorCore(_small_config())
    core.set_inputs(pts, pts)
    bin_ = core.r_pod_map[1][0]
    assert bin_.is_occupied
    assert len(bin_.points) == 3
    assert bin_.max_h - bin_.min_h == pytest.approx(2.0, abs=1e-6)
    assert core.r_pod_map[0][0].is_occupied is False