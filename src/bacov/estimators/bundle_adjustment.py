from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

import numpy as np

from bacov.core.manifold import QuaternionManifold, SubsetManifold
from bacov.core.problem import Problem
from bacov.estimators.cost_functions import ReprojErrorCost
from bacov.scene.reconstruction import Reconstruction

logger = logging.getLogger(__name__)


@dataclass
class BundleAdjustmentConfig:
    """Which images take part in bundle adjustment and which parameters stay fixed."""

    image_ids: set[int] = field(default_factory=set)
    constant_cam_intrinsics: set[int] = field(default_factory=set)
    constant_cam_poses: set[int] = field(default_factory=set)
    constant_cam_positions: dict[int, tuple[int, ...]] = field(default_factory=dict)
    variable_point3D_ids: set[int] = field(default_factory=set)
    constant_point3D_ids: set[int] = field(default_factory=set)

    def add_image(self, image_id: int) -> None:
        self.image_ids.add(int(image_id))

    def set_constant_cam_intrinsics(self, camera_id: int) -> None:
        self.constant_cam_intrinsics.add(int(camera_id))

    def set_constant_cam_pose(self, image_id: int) -> None:
        if int(image_id) in self.constant_cam_positions:
            raise ValueError("image already has constant positions")
        self.constant_cam_poses.add(int(image_id))

    def set_constant_cam_positions(self, image_id: int, idxs: list[int] | tuple[int, ...]) -> None:
        if int(image_id) in self.constant_cam_poses:
            raise ValueError("image already has a constant pose")
        self.constant_cam_positions[int(image_id)] = tuple(int(i) for i in idxs)

    def add_variable_point(self, point3D_id: int) -> None:
        if int(point3D_id) in self.constant_point3D_ids:
            raise ValueError("point is already constant")
        self.variable_point3D_ids.add(int(point3D_id))

    def add_constant_point(self, point3D_id: int) -> None:
        if int(point3D_id) in self.variable_point3D_ids:
            raise ValueError("point is already variable")
        self.constant_point3D_ids.add(int(point3D_id))

    def has_constant_cam_pose(self, image_id: int) -> bool:
        return int(image_id) in self.constant_cam_poses

    def has_constant_point(self, point3D_id: int) -> bool:
        return int(point3D_id) in self.constant_point3D_ids


@dataclass(frozen=True)
class BundleAdjustmentOptions:
    refine_focal_length: bool = True
    refine_principal_point: bool = False
    refine_extra_params: bool = True
    loss: Literal["linear", "huber", "soft_l1", "cauchy", "arctan"] = "linear"
    f_scale_px: float = 1.0
    max_num_iterations: int = 100
    function_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-10
    gradient_tolerance: float = 1e-10


class BundleAdjuster:
    """
    Reprojection-error bundle adjustment over the storage of a reconstruction.

    The problem references the reconstruction's pose, point and intrinsics
    arrays directly: `solve()` updates them in place.
    """

    def __init__(
        self,
        options: BundleAdjustmentOptions,
        config: BundleAdjustmentConfig,
        reconstruction: Reconstruction,
    ) -> None:
        self.options = options
        self.config = config
        self.reconstruction = reconstruction
        self.problem = Problem()
        self._camera_ids: set[int] = set()
        self._point_num_observations: dict[int, int] = {}
        self._build()

    def _add_observation(self, image_id: int, point2D_idx: int, constant_pose: bool) -> None:
        rec = self.reconstruction
        image = rec.image(image_id)
        point2D = image.points2D[point2D_idx]
        point3D = rec.point3D(point2D.point3D_id)
        camera = rec.camera(image.camera_id)
        pose = image.cam_from_world

        cost = ReprojErrorCost(camera.camera_model, point2D.xy)
        self.problem.add_residual_block(cost, pose.rotation, pose.translation, point3D.xyz, camera.params)
        if constant_pose:
            self.problem.set_parameter_block_constant(pose.rotation)
            self.problem.set_parameter_block_constant(pose.translation)
        self._camera_ids.add(image.camera_id)
        self._point_num_observations[point2D.point3D_id] = self._point_num_observations.get(point2D.point3D_id, 0) + 1

    def _build(self) -> None:
        rec = self.reconstruction
        config = self.config

        for image_id in sorted(config.image_ids):
            image = rec.image(image_id)
            for idx, point2D in enumerate(image.points2D):
                if point2D.has_point3D:
                    self._add_observation(image_id, idx, constant_pose=False)

        # Observations of explicitly added points from images outside the config
        # constrain the point only: those poses stay fixed.
        for point3D_id in sorted(config.variable_point3D_ids | config.constant_point3D_ids):
            for el in rec.point3D(point3D_id).track:
                if el.image_id not in config.image_ids:
                    self._add_observation(el.image_id, el.point2D_idx, constant_pose=True)

        self._parameterize_cameras()
        self._parameterize_poses()
        self._parameterize_points()

        logger.debug(
            "Built bundle adjustment problem: %d images, %d cameras, %d points, %d residuals",
            len(config.image_ids),
            len(self._camera_ids),
            len(self._point_num_observations),
            self.problem.num_residuals,
        )

    def _parameterize_poses(self) -> None:
        for image_id in sorted(self.config.image_ids):
            pose = self.reconstruction.image(image_id).cam_from_world
            if not self.problem.has_parameter_block(pose.rotation):
                continue
            self.problem.set_manifold(pose.rotation, QuaternionManifold())
            if self.config.has_constant_cam_pose(image_id):
                self.problem.set_parameter_block_constant(pose.rotation)
                self.problem.set_parameter_block_constant(pose.translation)
            elif image_id in self.config.constant_cam_positions:
                idxs = self.config.constant_cam_positions[image_id]
                self.problem.set_manifold(pose.translation, SubsetManifold(3, idxs))

        # Poses of images outside the config that entered through point tracks.
        for image_id, image in self.reconstruction.images.items():
            if image_id in self.config.image_ids:
                continue
            pose = image.cam_from_world
            if self.problem.has_parameter_block(pose.rotation):
                self.problem.set_manifold(pose.rotation, QuaternionManifold())

    def _parameterize_cameras(self) -> None:
        opts = self.options
        constant_camera = not opts.refine_focal_length and not opts.refine_principal_point and not opts.refine_extra_params
        for camera_id in sorted(self._camera_ids):
            camera = self.reconstruction.camera(camera_id)
            if constant_camera or camera_id in self.config.constant_cam_intrinsics:
                self.problem.set_parameter_block_constant(camera.params)
                continue
            model = camera.camera_model
            const_idxs: list[int] = []
            if not opts.refine_focal_length:
                const_idxs.extend(model.focal_length_idxs)
            if not opts.refine_principal_point:
                const_idxs.extend(model.principal_point_idxs)
            if not opts.refine_extra_params:
                const_idxs.extend(model.extra_params_idxs)
            if const_idxs:
                self.problem.set_manifold(camera.params, SubsetManifold(model.num_params, tuple(const_idxs)))

    def _parameterize_points(self) -> None:
        rec = self.reconstruction
        for point3D_id in self._point_num_observations:
            point3D = rec.point3D(point3D_id)
            if self.config.has_constant_point(point3D_id):
                self.problem.set_parameter_block_constant(point3D.xyz)
                continue
            # A point whose whole track lies in the config is fully
            # constrained here; otherwise some of its observations are missing
            # and it is kept fixed unless explicitly added as variable.
            if (
                self._point_num_observations[point3D_id] < len(point3D.track)
                and point3D_id not in self.config.variable_point3D_ids
            ):
                self.problem.set_parameter_block_constant(point3D.xyz)

    def solve(self) -> dict[str, float]:
        """
        Minimize the reprojection error with scipy's trust-region solver.

        The unknowns are tangent-space steps around the starting values; the
        Jacobian uses the plus-Jacobian at the current point, which preserves
        the stationary points of the original problem.
        """
        from scipy.optimize import least_squares  # type: ignore

        opts = self.options
        blocks = self.problem.variable_parameter_blocks()
        x0 = [b.copy() for b in blocks]
        num_tangent = sum(self.problem.parameter_block_tangent_size(b) for b in blocks)
        if num_tangent == 0 or self.problem.num_residuals == 0:
            logger.warning("Bundle adjustment has nothing to optimize")
            return {"opt_cost": float("nan"), "opt_nfev": 0.0, "opt_success": 0.0}

        def fun(delta: np.ndarray) -> np.ndarray:
            self.problem.plus(blocks, x0, delta)
            residuals, _ = self.problem.evaluate(blocks, jacobian=False)
            return residuals

        def jac(delta: np.ndarray):
            self.problem.plus(blocks, x0, delta)
            _, J = self.problem.evaluate(blocks)
            return J

        sol = least_squares(
            fun,
            np.zeros((num_tangent,), dtype=np.float64),
            jac=jac,
            method="trf",
            loss=opts.loss,
            f_scale=float(opts.f_scale_px),
            ftol=float(opts.function_tolerance),
            xtol=float(opts.parameter_tolerance),
            gtol=float(opts.gradient_tolerance),
            max_nfev=int(opts.max_num_iterations),
            x_scale="jac",
        )
        self.problem.plus(blocks, x0, sol.x)

        diag = {
            "opt_cost": float(sol.cost),
            "opt_nfev": float(sol.nfev),
            "opt_success": float(bool(sol.success)),
            "num_residuals": float(self.problem.num_residuals),
            "num_tangent_params": float(num_tangent),
        }
        logger.info(
            "Bundle adjustment finished: cost=%.6g, nfev=%d, success=%s", sol.cost, sol.nfev, bool(sol.success)
        )
        return diag


def create_default_bundle_adjuster(
    options: BundleAdjustmentOptions,
    config: BundleAdjustmentConfig,
    reconstruction: Reconstruction,
) -> BundleAdjuster:
    return BundleAdjuster(options, config, reconstruction)
