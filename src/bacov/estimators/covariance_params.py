from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from bacov.core.problem import Problem, block_key
from bacov.scene.reconstruction import Reconstruction


@dataclass(frozen=True)
class PoseParam:
    """
    cam_from_world blocks of one image. A missing block (not in the problem,
    or constant) is None.
    """

    image_id: int
    qvec: np.ndarray | None
    tvec: np.ndarray | None

    def blocks(self) -> list[np.ndarray]:
        return [b for b in (self.qvec, self.tvec) if b is not None]


@dataclass(frozen=True)
class PointParam:
    point3D_id: int
    xyz: np.ndarray | None


def _variable_block(problem: Problem, values: np.ndarray) -> np.ndarray | None:
    if problem.has_parameter_block(values) and not problem.is_parameter_block_constant(values):
        return values
    return None


def parameter_block_tangent_size(problem: Problem, values: np.ndarray) -> int:
    """Tangent size from the problem's manifold metadata (3 for a quaternion block, not 4)."""
    return problem.parameter_block_tangent_size(values)


def get_pose_params(reconstruction: Reconstruction, problem: Problem) -> list[PoseParam]:
    params: list[PoseParam] = []
    for image_id in sorted(reconstruction.images):
        pose = reconstruction.image(image_id).cam_from_world
        params.append(
            PoseParam(
                image_id=image_id,
                qvec=_variable_block(problem, pose.rotation),
                tvec=_variable_block(problem, pose.translation),
            )
        )
    return params


def get_point_params(reconstruction: Reconstruction, problem: Problem) -> list[PointParam]:
    params: list[PointParam] = []
    for point3D_id in sorted(reconstruction.points3D):
        point3D = reconstruction.point3D(point3D_id)
        params.append(PointParam(point3D_id=point3D_id, xyz=_variable_block(problem, point3D.xyz)))
    return params


def get_other_params(
    problem: Problem,
    poses: Sequence[PoseParam],
    points: Sequence[PointParam],
) -> list[np.ndarray]:
    """
    Variable blocks of the problem that belong to no pose and no point, in
    problem order. Blocks are compared by address, never by value, so storage
    shared with a pose or point is excluded even if it happens to be equal to
    (or a view of) another array.
    """
    classified: set[int] = set()
    for pose in poses:
        classified.update(block_key(b) for b in pose.blocks())
    for point in points:
        if point.xyz is not None:
            classified.add(block_key(point.xyz))

    others: list[np.ndarray] = []
    for values in problem.parameter_blocks():
        if problem.is_parameter_block_constant(values):
            continue
        if block_key(values) in classified:
            continue
        others.append(values)
    return others
