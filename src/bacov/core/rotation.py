from __future__ import annotations

import numpy as np


def normalize_quaternion(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64).reshape(4)
    n = float(np.linalg.norm(q))
    if not np.isfinite(n) or n < 1e-12:
        raise ValueError("quaternion must have a finite, non-zero norm")
    return q / n


def quaternion_multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Hamilton product a*b for quaternions stored as (x,y,z,w)."""
    ax, ay, az, aw = (float(c) for c in a)
    bx, by, bz, bw = (float(c) for c in b)
    return np.array(
        [
            aw * bx + ax * bw + ay * bz - az * by,
            aw * by - ax * bz + ay * bw + az * bx,
            aw * bz + ax * by - ay * bx + az * bw,
            aw * bw - ax * bx - ay * by - az * bz,
        ],
        dtype=np.float64,
    )


def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    """
    Rotation matrix of a unit quaternion stored as (x,y,z,w).

    Same convention as `scipy.spatial.transform.Rotation.from_quat`, without
    the object overhead (this sits in the per-observation hot path).
    """
    x, y, z, w = (float(c) for c in q)
    return np.array(
        [
            [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - z * w), 2.0 * (x * z + y * w)],
            [2.0 * (x * y + z * w), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - x * w)],
            [2.0 * (x * z - y * w), 2.0 * (y * z + x * w), 1.0 - 2.0 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


def rotation_matrix_to_quaternion(R: np.ndarray) -> np.ndarray:
    from scipy.spatial.transform import Rotation as Rot  # type: ignore

    return Rot.from_matrix(np.asarray(R, dtype=np.float64).reshape(3, 3)).as_quat()


def skew(v: np.ndarray) -> np.ndarray:
    x, y, z = (float(c) for c in v)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]], dtype=np.float64)


def rotate_point_quaternion_jacobian(q: np.ndarray, xyz: np.ndarray) -> np.ndarray:
    """
    Jacobian (3,4) of R(q) X with respect to the ambient quaternion (x,y,z,w).

    Uses R(q) X = X + 2w (v x X) + 2 v x (v x X), which is exact on the unit
    sphere; manifold plus-Jacobians only probe tangent directions of it.
    """
    q = np.asarray(q, dtype=np.float64).reshape(4)
    X = np.asarray(xyz, dtype=np.float64).reshape(3)
    v = q[:3]
    w = float(q[3])
    J = np.empty((3, 4), dtype=np.float64)
    J[:, :3] = -2.0 * w * skew(X) + 2.0 * (float(v @ X) * np.eye(3) + np.outer(v, X) - 2.0 * np.outer(X, v))
    J[:, 3] = 2.0 * np.cross(v, X)
    return J
