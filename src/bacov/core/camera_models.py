from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class CameraModel:
    """
    Pixel projection for a camera-frame point, parameterized by a flat
    `params` vector. Subclasses map normalized coordinates (u,v) = (X/Z, Y/Z)
    to pixels and provide both Jacobians.
    """

    name: str
    param_names: tuple[str, ...]
    focal_length_idxs: tuple[int, ...]
    principal_point_idxs: tuple[int, ...]
    extra_params_idxs: tuple[int, ...]

    @property
    def num_params(self) -> int:
        return len(self.param_names)

    def _img_from_normalized(
        self, params: np.ndarray, u: np.ndarray, v: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Returns (xy (N,2), dxy/duv (N,2,2), dxy/dparams (N,2,P))."""
        raise NotImplementedError

    def _check_params(self, params: np.ndarray) -> np.ndarray:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if params.size != self.num_params:
            raise ValueError(f"{self.name} expects {self.num_params} params, got {params.size}")
        return params

    def img_from_cam(self, params: np.ndarray, xyz_cam: np.ndarray) -> np.ndarray:
        xy, _, _ = self.img_from_cam_with_jacobians(params, xyz_cam)
        return xy

    def img_from_cam_with_jacobians(
        self, params: np.ndarray, xyz_cam: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Project camera-frame points (N,3).

        Returns (xy (N,2), dxy/dxyz_cam (N,2,3), dxy/dparams (N,2,P)).
        """
        params = self._check_params(params)
        xyz_cam = np.asarray(xyz_cam, dtype=np.float64).reshape(-1, 3)
        X = xyz_cam[:, 0]
        Y = xyz_cam[:, 1]
        Z = xyz_cam[:, 2]
        inv_z = 1.0 / Z
        u = X * inv_z
        v = Y * inv_z

        xy, d_uv, d_params = self._img_from_normalized(params, u, v)

        # d(u,v)/d(X,Y,Z)
        d_norm = np.zeros((xyz_cam.shape[0], 2, 3), dtype=np.float64)
        d_norm[:, 0, 0] = inv_z
        d_norm[:, 0, 2] = -u * inv_z
        d_norm[:, 1, 1] = inv_z
        d_norm[:, 1, 2] = -v * inv_z
        d_xyz = np.einsum("nij,njk->nik", d_uv, d_norm)
        return xy, d_xyz, d_params


@dataclass(frozen=True)
class SimplePinholeCameraModel(CameraModel):
    name: str = "SIMPLE_PINHOLE"
    param_names: tuple[str, ...] = ("f", "cx", "cy")
    focal_length_idxs: tuple[int, ...] = (0,)
    principal_point_idxs: tuple[int, ...] = (1, 2)
    extra_params_idxs: tuple[int, ...] = ()

    def _img_from_normalized(self, params, u, v):
        f, cx, cy = params
        n = u.shape[0]
        xy = np.stack([f * u + cx, f * v + cy], axis=-1)
        d_uv = np.zeros((n, 2, 2), dtype=np.float64)
        d_uv[:, 0, 0] = f
        d_uv[:, 1, 1] = f
        d_params = np.zeros((n, 2, 3), dtype=np.float64)
        d_params[:, 0, 0] = u
        d_params[:, 1, 0] = v
        d_params[:, 0, 1] = 1.0
        d_params[:, 1, 2] = 1.0
        return xy, d_uv, d_params


@dataclass(frozen=True)
class PinholeCameraModel(CameraModel):
    name: str = "PINHOLE"
    param_names: tuple[str, ...] = ("fx", "fy", "cx", "cy")
    focal_length_idxs: tuple[int, ...] = (0, 1)
    principal_point_idxs: tuple[int, ...] = (2, 3)
    extra_params_idxs: tuple[int, ...] = ()

    def _img_from_normalized(self, params, u, v):
        fx, fy, cx, cy = params
        n = u.shape[0]
        xy = np.stack([fx * u + cx, fy * v + cy], axis=-1)
        d_uv = np.zeros((n, 2, 2), dtype=np.float64)
        d_uv[:, 0, 0] = fx
        d_uv[:, 1, 1] = fy
        d_params = np.zeros((n, 2, 4), dtype=np.float64)
        d_params[:, 0, 0] = u
        d_params[:, 1, 1] = v
        d_params[:, 0, 2] = 1.0
        d_params[:, 1, 3] = 1.0
        return xy, d_uv, d_params


@dataclass(frozen=True)
class SimpleRadialCameraModel(CameraModel):
    """
    Pinhole with one radial distortion coefficient:
      x = f u (1 + k r^2) + cx,  y = f v (1 + k r^2) + cy,  r^2 = u^2 + v^2
    """

    name: str = "SIMPLE_RADIAL"
    param_names: tuple[str, ...] = ("f", "cx", "cy", "k")
    focal_length_idxs: tuple[int, ...] = (0,)
    principal_point_idxs: tuple[int, ...] = (1, 2)
    extra_params_idxs: tuple[int, ...] = (3,)

    def _img_from_normalized(self, params, u, v):
        f, cx, cy, k = params
        n = u.shape[0]
        r2 = u * u + v * v
        s = 1.0 + k * r2
        xy = np.stack([f * u * s + cx, f * v * s + cy], axis=-1)

        d_uv = np.empty((n, 2, 2), dtype=np.float64)
        d_uv[:, 0, 0] = f * (s + 2.0 * k * u * u)
        d_uv[:, 0, 1] = f * 2.0 * k * u * v
        d_uv[:, 1, 0] = f * 2.0 * k * u * v
        d_uv[:, 1, 1] = f * (s + 2.0 * k * v * v)

        d_params = np.zeros((n, 2, 4), dtype=np.float64)
        d_params[:, 0, 0] = u * s
        d_params[:, 1, 0] = v * s
        d_params[:, 0, 1] = 1.0
        d_params[:, 1, 2] = 1.0
        d_params[:, 0, 3] = f * u * r2
        d_params[:, 1, 3] = f * v * r2
        return xy, d_uv, d_params


CAMERA_MODELS: dict[str, CameraModel] = {
    m.name: m for m in (SimplePinholeCameraModel(), PinholeCameraModel(), SimpleRadialCameraModel())
}


def camera_model_from_name(name: str) -> CameraModel:
    try:
        return CAMERA_MODELS[name]
    except KeyError:
        raise ValueError(f"unknown camera model {name!r}; expected one of {sorted(CAMERA_MODELS)}") from None
