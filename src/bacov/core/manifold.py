from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from bacov.core.rotation import quaternion_multiply


class Manifold:
    """
    Local parameterization of a parameter block.

    `plus(x, delta)` moves `x` along the tangent vector `delta`;
    `plus_jacobian(x)` is d plus(x, delta) / d delta at delta = 0, shaped
    (ambient_size, tangent_size).
    """

    @property
    def ambient_size(self) -> int:
        raise NotImplementedError

    @property
    def tangent_size(self) -> int:
        raise NotImplementedError

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def plus_jacobian(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError


@dataclass(frozen=True)
class EuclideanManifold(Manifold):
    size: int

    @property
    def ambient_size(self) -> int:
        return int(self.size)

    @property
    def tangent_size(self) -> int:
        return int(self.size)

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        return np.asarray(x, dtype=np.float64) + np.asarray(delta, dtype=np.float64)

    def plus_jacobian(self, x: np.ndarray) -> np.ndarray:
        return np.eye(self.size, dtype=np.float64)


@dataclass(frozen=True)
class QuaternionManifold(Manifold):
    """
    Unit quaternions stored as (x,y,z,w).

    plus(q, delta) = exp(delta) * q with exp(delta) = (sin|delta|/|delta| delta, cos|delta|),
    i.e. the perturbation is applied on the left (world side of cam_from_world).
    """

    @property
    def ambient_size(self) -> int:
        return 4

    @property
    def tangent_size(self) -> int:
        return 3

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        delta = np.asarray(delta, dtype=np.float64).reshape(3)
        norm = float(np.linalg.norm(delta))
        if norm == 0.0:
            return np.asarray(x, dtype=np.float64).copy()
        q_delta = np.concatenate([np.sin(norm) / norm * delta, [np.cos(norm)]])
        return quaternion_multiply(q_delta, x)

    def plus_jacobian(self, x: np.ndarray) -> np.ndarray:
        qx, qy, qz, qw = (float(c) for c in x)
        return np.array(
            [
                [qw, qz, -qy],
                [-qz, qw, qx],
                [qy, -qx, qw],
                [-qx, -qy, -qz],
            ],
            dtype=np.float64,
        )


@dataclass(frozen=True)
class SubsetManifold(Manifold):
    """Euclidean block with some coordinates held fixed."""

    size: int
    constant_indices: tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        idxs = tuple(sorted(set(int(i) for i in self.constant_indices)))
        if any(i < 0 or i >= int(self.size) for i in idxs):
            raise ValueError("constant indices must lie in [0, size)")
        object.__setattr__(self, "constant_indices", idxs)

    @property
    def ambient_size(self) -> int:
        return int(self.size)

    @property
    def tangent_size(self) -> int:
        return int(self.size) - len(self.constant_indices)

    @property
    def free_indices(self) -> tuple[int, ...]:
        return tuple(i for i in range(int(self.size)) if i not in self.constant_indices)

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        out = np.asarray(x, dtype=np.float64).copy()
        out[list(self.free_indices)] += np.asarray(delta, dtype=np.float64).reshape(-1)
        return out

    def plus_jacobian(self, x: np.ndarray) -> np.ndarray:
        return np.eye(self.size, dtype=np.float64)[:, list(self.free_indices)]
