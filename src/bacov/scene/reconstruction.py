from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from bacov.core.camera_models import CameraModel, camera_model_from_name
from bacov.core.rotation import normalize_quaternion, quaternion_to_rotation_matrix, rotation_matrix_to_quaternion

INVALID_CAMERA_ID = 2**32 - 1
INVALID_IMAGE_ID = 2**32 - 1
INVALID_POINT3D_ID = 2**64 - 1


def _storage(values, size: int) -> np.ndarray:
    """Fresh contiguous float64 storage; optimization problems reference it by address."""
    arr = np.array(values, dtype=np.float64).reshape(-1)
    if arr.size != size:
        raise ValueError(f"expected {size} values, got {arr.size}")
    return np.ascontiguousarray(arr)


@dataclass
class Rigid3d:
    """
    Rigid transform x_b = R(rotation) x_a + translation.

    `rotation` is a unit quaternion (x,y,z,w). Both arrays are parameter
    storage: bundle adjustment updates them in place.
    """

    rotation: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0]))
    translation: np.ndarray = field(default_factory=lambda: np.zeros((3,), dtype=np.float64))

    def __post_init__(self) -> None:
        self.rotation = _storage(normalize_quaternion(self.rotation), 4)
        self.translation = _storage(self.translation, 3)

    @classmethod
    def from_matrix(cls, R: np.ndarray, t: np.ndarray) -> "Rigid3d":
        return cls(rotation=rotation_matrix_to_quaternion(R), translation=t)

    def rotation_matrix(self) -> np.ndarray:
        return quaternion_to_rotation_matrix(self.rotation)

    def matrix(self) -> np.ndarray:
        return np.concatenate([self.rotation_matrix(), self.translation.reshape(3, 1)], axis=1)

    def apply(self, xyz: np.ndarray) -> np.ndarray:
        xyz = np.asarray(xyz, dtype=np.float64)
        out = xyz.reshape(-1, 3) @ self.rotation_matrix().T + self.translation.reshape(1, 3)
        return out.reshape(xyz.shape)

    def inverse(self) -> "Rigid3d":
        R = self.rotation_matrix()
        return Rigid3d.from_matrix(R.T, -R.T @ self.translation)


@dataclass
class Camera:
    camera_id: int
    model: str
    width: int
    height: int
    params: np.ndarray

    def __post_init__(self) -> None:
        self.params = _storage(self.params, self.camera_model.num_params)

    @property
    def camera_model(self) -> CameraModel:
        return camera_model_from_name(self.model)

    def img_from_cam(self, xyz_cam: np.ndarray) -> np.ndarray:
        return self.camera_model.img_from_cam(self.params, xyz_cam)


@dataclass
class Point2D:
    xy: np.ndarray
    point3D_id: int = INVALID_POINT3D_ID

    def __post_init__(self) -> None:
        self.xy = _storage(self.xy, 2)

    @property
    def has_point3D(self) -> bool:
        return self.point3D_id != INVALID_POINT3D_ID


@dataclass
class Image:
    image_id: int
    camera_id: int
    cam_from_world: Rigid3d = field(default_factory=Rigid3d)
    points2D: list[Point2D] = field(default_factory=list)
    name: str = ""

    @property
    def projection_center(self) -> np.ndarray:
        return self.cam_from_world.inverse().translation


@dataclass(frozen=True)
class TrackElement:
    image_id: int
    point2D_idx: int


@dataclass
class Point3D:
    xyz: np.ndarray
    track: list[TrackElement] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.xyz = _storage(self.xyz, 3)


class Reconstruction:
    """Cameras, registered images and triangulated points with their tracks."""

    def __init__(self) -> None:
        self._cameras: dict[int, Camera] = {}
        self._images: dict[int, Image] = {}
        self._points3D: dict[int, Point3D] = {}
        self._next_point3D_id = 1

    @property
    def cameras(self) -> dict[int, Camera]:
        return self._cameras

    @property
    def images(self) -> dict[int, Image]:
        return self._images

    @property
    def points3D(self) -> dict[int, Point3D]:
        return self._points3D

    @property
    def num_points3D(self) -> int:
        return len(self._points3D)

    def camera(self, camera_id: int) -> Camera:
        return self._cameras[camera_id]

    def image(self, image_id: int) -> Image:
        return self._images[image_id]

    def point3D(self, point3D_id: int) -> Point3D:
        return self._points3D[point3D_id]

    def add_camera(self, camera: Camera) -> None:
        if camera.camera_id in self._cameras:
            raise ValueError(f"camera {camera.camera_id} already exists")
        self._cameras[camera.camera_id] = camera

    def add_image(self, image: Image) -> None:
        if image.image_id in self._images:
            raise ValueError(f"image {image.image_id} already exists")
        if image.camera_id not in self._cameras:
            raise ValueError(f"image {image.image_id} references unknown camera {image.camera_id}")
        self._images[image.image_id] = image

    def add_point3D(self, xyz: np.ndarray, track: list[TrackElement]) -> int:
        """Add a point and link the observing 2D points to it. Returns its id."""
        point3D_id = self._next_point3D_id
        self._next_point3D_id += 1
        for el in track:
            point2D = self._images[el.image_id].points2D[el.point2D_idx]
            if point2D.has_point3D:
                raise ValueError(f"point2D {el.point2D_idx} of image {el.image_id} already has a 3D point")
            point2D.point3D_id = point3D_id
        self._points3D[point3D_id] = Point3D(xyz=xyz, track=list(track))
        return point3D_id

    def project_point(self, image_id: int, xyz: np.ndarray) -> np.ndarray:
        image = self._images[image_id]
        camera = self._cameras[image.camera_id]
        xyz_cam = image.cam_from_world.apply(np.asarray(xyz, dtype=np.float64).reshape(1, 3))
        return camera.img_from_cam(xyz_cam)[0]
