import pytest

from openlmm.hmm_mos.params import HmmMosParams


def test_defaults_match_source():
    params = HmmMosParams.from_config(None)
    assert params == HmmMosParams()
    assert params.replace_intensity is True
    assert params.voxel_size == 0.2
    assert params.belief_threshold == 0.99
    assert params.conv_size == 5
    assert params.local_window_size == 3
    assert params.global_window_size == 300
    assert params.min_otsu == 3
    assert params.max_range == 50.0
    assert params.min_range == 0.5


def test_overrides_are_read_from_section():
    config = {
        "dynamic_remover": {
            "voxel_size": 0.5,
            "conv_size": 7,
            "max_range": 30,
            "replace_intensity": False,
        }
    }
    params = HmmMosParams.from_config(config)
    assert params.voxel_size == 0.5
    assert params.conv_size == 7
    assert params.max_range == 30.0
    assert isinstance(params.max_range, float)
    assert params.replace_intensity is False
    assert params.occupancy_sigma == HmmMosParams().occupancy_sigma


def test_other_sections_are_ignored():
    config = {"data_loader": {"voxel_size": 9.0}}
    assert HmmMosParams.from_config(config) == HmmMosParams()


@pytest.mark.parametrize("text,expected", [("false", False), ("true", True), ("0", False)])
def test_boolean_strings(text, expected):
    config = {"dynamic_remover": {"replace_intensity": text}}
    assert HmmMosParams.from_config(config).replace_intensity is expected


def test_bad_number_raises():
    with pytest.raises(ValueError):
        HmmMosParams.from_config({"dynamic_remover": {"conv_size": "wide"}})