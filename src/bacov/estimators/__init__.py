"""
Estimators over a reconstruction: bundle adjustment and the covariance of
its solution.
"""

from bacov.estimators.bundle_adjustment import (
    BundleAdjuster,
    BundleAdjustmentConfig,
    BundleAdjustmentOptions,
    create_default_bundle_adjuster,
)
from bacov.estimators.covariance import BACovariance, estimate_ba_covariance, estimate_ba_covariance_from_problem

__all__ = [
    "BundleAdjuster",
    "BundleAdjustmentConfig",
    "BundleAdjustmentOptions",
    "create_default_bundle_adjuster",
    "BACovariance",
    "estimate_ba_covariance",
    "estimate_ba_covariance_from_problem",
]
