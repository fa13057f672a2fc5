from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from bacov.scene.reconstruction import Camera, Image, Point2D, Reconstruction, Rigid3d, TrackElement


@dataclass(frozen=True)
class SyntheticDatasetOptions:
    num_cameras: int = 2
    num_images: int = 10
    num_points3D: int = 100
    camera_width: int = 1024
    camera_height: int = 768
    camera_model: str = "SIMPLE_RADIAL"
    point2D_stddev: float = 0.0


def _look_at(center: np.ndarray, rng: np.random.Generator) -> Rigid3d:
    z = -center / np.linalg.norm(center)
    while True:
        up = rng.normal(size=3)
        x = np.cross(up, z)
        if np.linalg.norm(x) > 0.1:
            break
    x /= np.linalg.norm(x)
    y = np.cross(z, x)
    R = np.stack([x, y, z], axis=0)
    return Rigid3d.from_matrix(R, -R @ center)


def synthesize_dataset(options: SyntheticDatasetOptions, seed: int = 0) -> Reconstruction:
    """
    Cameras on a shell of radius 4..6 looking at the origin; points uniform in
    [-1,1]^3, so every point is in front of every image and seen by all of them.
    """
    rng = np.random.default_rng(seed)
    rec = Reconstruction()

    w, h = options.camera_width, options.camera_height
    focal = 1.2 * max(w, h)
    for camera_id in range(1, options.num_cameras + 1):
        f = focal * rng.uniform(0.9, 1.1)
        if options.camera_model == "SIMPLE_RADIAL":
            params = [f, w / 2.0, h / 2.0, rng.uniform(-0.05, 0.05)]
        elif options.camera_model == "PINHOLE":
            params = [f, f * rng.uniform(0.98, 1.02), w / 2.0, h / 2.0]
        else:
            params = [f, w / 2.0, h / 2.0]
        rec.add_camera(Camera(camera_id=camera_id, model=options.camera_model, width=w, height=h, params=params))

    for image_id in range(1, options.num_images + 1):
        direction = rng.normal(size=3)
        direction /= np.linalg.norm(direction)
        center = rng.uniform(4.0, 6.0) * direction
        camera_id = (image_id - 1) % options.num_cameras + 1
        rec.add_image(Image(image_id=image_id, camera_id=camera_id, cam_from_world=_look_at(center, rng)))

    for _ in range(options.num_points3D):
        xyz = rng.uniform(-1.0, 1.0, size=3)
        track: list[TrackElement] = []
        for image_id, image in rec.images.items():
            xy = rec.project_point(image_id, xyz)
            if options.point2D_stddev > 0:
                xy = xy + rng.normal(scale=options.point2D_stddev, size=2)
            image.points2D.append(Point2D(xy=xy))
            track.append(TrackElement(image_id=image_id, point2D_idx=len(image.points2D) - 1))
        rec.add_point3D(xyz, track)

    return rec
