from bacov.estimators import (
    BACovariance,
    BundleAdjuster,
    BundleAdjustmentConfig,
    BundleAdjustmentOptions,
    create_default_bundle_adjuster,
    estimate_ba_covariance,
    estimate_ba_covariance_from_problem,
)
from bacov.options import BACovarianceOptions, CovarianceOptionsError, load_ba_covariance_options
from bacov.scene.reconstruction import Camera, Image, Point2D, Point3D, Reconstruction, Rigid3d, TrackElement

__all__ = [
    "BACovariance",
    "BACovarianceOptions",
    "CovarianceOptionsError",
    "load_ba_covariance_options",
    "estimate_ba_covariance",
    "estimate_ba_covariance_from_problem",
    "BundleAdjuster",
    "BundleAdjustmentConfig",
    "BundleAdjustmentOptions",
    "create_default_bundle_adjuster",
    "Camera",
    "Image",
    "Point2D",
    "Point3D",
    "Reconstruction",
    "Rigid3d",
    "TrackElement",
]
