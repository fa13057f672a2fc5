from __future__ import annotations

import numpy as np

from bacov.core.camera_models import CameraModel
from bacov.core.rotation import quaternion_to_rotation_matrix, rotate_point_quaternion_jacobian


class ReprojErrorCost:
    """
    Reprojection residual of one observation:

      r = project(params, R(q) X + t) - xy

    Parameter blocks: (rotation q (4,), translation t (3,), point X (3,), camera params (P,)).
    Jacobians are ambient; the problem maps them into tangent space.
    """

    num_residuals = 2

    def __init__(self, camera_model: CameraModel, xy: np.ndarray) -> None:
        self.camera_model = camera_model
        self.xy = np.asarray(xy, dtype=np.float64).reshape(2).copy()
        self.parameter_block_sizes = (4, 3, 3, camera_model.num_params)

    def evaluate(
        self,
        rotation: np.ndarray,
        translation: np.ndarray,
        xyz: np.ndarray,
        params: np.ndarray,
        jacobians: bool = True,
    ) -> tuple[np.ndarray, list[np.ndarray] | None]:
        R = quaternion_to_rotation_matrix(rotation)
        xyz_cam = R @ xyz + translation
        xy, d_xyz_cam, d_params = self.camera_model.img_from_cam_with_jacobians(params, xyz_cam)
        residual = xy[0] - self.xy
        if not jacobians:
            return residual, None

        J_cam = d_xyz_cam[0]
        return residual, [
            J_cam @ rotate_point_quaternion_jacobian(rotation, xyz),
            J_cam,
            J_cam @ R,
            d_params[0],
        ]
