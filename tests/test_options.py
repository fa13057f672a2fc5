import json

import pytest

from bacov.options import (
    SCHEMA_VERSION,
    BACovarianceOptions,
    CovarianceOptionsError,
    load_ba_covariance_options,
    parse_ba_covariance_options,
)


def test_defaults():
    o = BACovarianceOptions()
    assert o.params == "all"
    assert o.damping == 1e-8
    assert o.point_covariance == "marginal"
    assert o.estimate_point_covs and o.estimate_pose_covs and o.estimate_other_covs


@pytest.mark.parametrize(
    "params,points,poses,others",
    [
        ("points", True, False, False),
        ("poses", False, True, False),
        ("poses_and_points", True, True, False),
        ("all", True, True, True),
    ],
)
def test_requested_groups(params, points, poses, others):
    o = BACovarianceOptions(params=params)
    assert (o.estimate_point_covs, o.estimate_pose_covs, o.estimate_other_covs) == (points, poses, others)


def test_parse_ok():
    o = parse_ba_covariance_options(
        {
            "schema_version": SCHEMA_VERSION,
            "params": "poses",
            "damping": 0,
            "point_covariance": "conditional",
            "eigenvalue_rtol": 1e-10,
        }
    )
    assert o.params == "poses"
    assert o.damping == 0.0
    assert o.point_covariance == "conditional"
    assert o.eigenvalue_rtol == 1e-10
    assert o.point_chunk_size == 1024


@pytest.mark.parametrize(
    "patch",
    [
        {"schema_version": "bacov.covariance_options.v1"},
        {"damping": -1e-8},
        {"damping": "1e-8"},
        {"damping": True},
        {"params": "intrinsics"},
        {"point_covariance": "joint"},
        {"eigenvalue_rtol": 2.0},
        {"point_chunk_size": 0},
    ],
)
def test_parse_rejects(patch):
    data = {"schema_version": SCHEMA_VERSION}
    data.update(patch)
    with pytest.raises(CovarianceOptionsError):
        parse_ba_covariance_options(data)


def test_load_from_file(tmp_path):
    path = tmp_path / "covariance.json"
    path.write_text(json.dumps({"schema_version": SCHEMA_VERSION, "params": "points"}), encoding="utf-8")
    assert load_ba_covariance_options(path) == BACovarianceOptions(params="points")


def test_options_error_is_value_error():
    with pytest.raises(ValueError):
        BACovarianceOptions(damping=float("nan"))


@pytest.mark.parametrize(
    "kwargs",
    [
        {"damping": True},
        {"damping": "1e-8"},
        {"eigenvalue_rtol": "1e-12"},
        {"eigenvalue_rtol": False},
        {"point_chunk_size": 1.5},
        {"point_chunk_size": True},
    ],
)
def test_options_reject_wrong_types(kwargs):
    with pytest.raises(CovarianceOptionsError):
        BACovarianceOptions(**kwargs)


def test_options_accept_numpy_scalars():
    import numpy as np

    o = BACovarianceOptions(damping=np.float64(1e-6), point_chunk_size=np.int64(16))
    assert o.point_chunk_size == 16
