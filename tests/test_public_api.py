from __future__ import annotations


def test_public_api_exports() -> None:
    import bacov

    assert hasattr(bacov, "estimate_ba_covariance")
    assert hasattr(bacov, "estimate_ba_covariance_from_problem")
    assert hasattr(bacov, "BACovariance")
    assert hasattr(bacov, "BACovarianceOptions")
    assert hasattr(bacov, "create_default_bundle_adjuster")
    assert hasattr(bacov, "Reconstruction")
