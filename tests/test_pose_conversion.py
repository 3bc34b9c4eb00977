import math

import numpy as np
import pytest

from openlmm.pose_conversion import (
    custom_pose_to_isometry,
    kitti_pose_to_isometry,
    tum_pose_to_isometry,
)


def test_kitti_row_major_layout():
    values = [float(v) for v in range(1, 13)]
    pose = kitti_pose_to_isometry(values)
    assert np.array_equal(pose[:3, :], np.reshape(values, (3, 4)))
    assert np.array_equal(pose[3], [0.0, 0.0, 0.0, 1.0])


def test_kitti_ignores_extra_values():
    values = [1, 0, 0, 4, 0, 1, 0, 5, 0, 0, 1, 6, 99]
    pose = kitti_pose_to_isometry(values)
    assert np.array_equal(pose[:3, 3], [4.0, 5.0, 6.0])
    assert np.array_equal(pose[:3, :3], np.eye(3))


def test_kitti_too_few_values():
    with pytest.raises(ValueError):
        kitti_pose_to_isometry([1.0, 2.0, 3.0])


def test_tum_identity_rotation():
    pose = tum_pose_to_isometry([0.0, 1.0, 2.0, 3.0, 0.0, 0.0, 0.0, 1.0])
    assert np.array_equal(pose[:3, :3], np.eye(3))
    assert np.array_equal(pose[:3, 3], [1.0, 2.0, 3.0])
    assert np.array_equal(pose[3], [0.0, 0.0, 0.0, 1.0])


def test_tum_quarter_turn_about_z():
    half = math.sqrt(0.5)
    pose = tum_pose_to_isometry([0.0, 0.0, 0.0, 0.0, 0.0, 0.0, half, half])
    rotation = pose[:3, :3]
    assert np.allclose(rotation @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0])
    assert np.allclose(rotation @ rotation.T, np.eye(3))
    assert math.isclose(np.linalg.det(rotation), 1.0)


def test_tum_too_few_values():
    with pytest.raises(ValueError):
        tum_pose_to_isometry([0.0, 1.0, 2.0, 3.0])


def test_custom_is_identity():
    assert np.array_equal(custom_pose_to_isometry([5.0, 6.0]), np.eye(4))