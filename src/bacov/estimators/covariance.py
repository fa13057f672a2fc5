from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

import numpy as np

from bacov.core.problem import Problem, block_key
from bacov.estimators.covariance_params import (
    PointParam,
    PoseParam,
    get_other_params,
    get_point_params,
    get_pose_params,
    parameter_block_tangent_size,
)
from bacov.options import BACovarianceOptions
from bacov.scene.reconstruction import Reconstruction

if TYPE_CHECKING:
    from scipy.sparse import csc_matrix

    from bacov.estimators.bundle_adjustment import BundleAdjuster

logger = logging.getLogger(__name__)

DEFAULT_EIGENVALUE_RTOL = 1e-12


class BACovariance:
    """
    Read-only covariances of a solved bundle adjustment, in tangent space.

    Pose covariances are over (rotation tangent, translation tangent) of
    cam_from_world. Every lookup returns a fresh read-only copy, or None when
    the entity is unknown, was not requested, or is constant in the problem.

    Other parameter blocks are looked up by address; the store keeps a
    reference to each of them so that no other array can take their address.
    """

    def __init__(
        self,
        *,
        pose_ranges: dict[int, tuple[int, int]],
        pose_cov: np.ndarray,
        point3D_ids: np.ndarray,
        point_covs: np.ndarray,
        other_covs: Sequence[tuple[np.ndarray, np.ndarray]],
    ) -> None:
        self._pose_ranges = dict(pose_ranges)
        self._pose_cov = _frozen(pose_cov)
        self._point_index = {int(pid): i for i, pid in enumerate(point3D_ids)}
        self._point_covs = _frozen(np.reshape(point_covs, (-1, 3, 3)))
        self._other_blocks: dict[int, np.ndarray] = {}
        self._other_covs: dict[int, np.ndarray] = {}
        for values, cov in other_covs:
            key = block_key(values)
            self._other_blocks[key] = values
            self._other_covs[key] = _frozen(cov)

    @property
    def image_ids(self) -> list[int]:
        return sorted(self._pose_ranges)

    @property
    def point3D_ids(self) -> list[int]:
        return sorted(self._point_index)

    @property
    def num_other_params(self) -> int:
        return len(self._other_covs)

    def get_cam_from_world_cov(self, image_id: int) -> np.ndarray | None:
        r = self._pose_ranges.get(image_id)
        if r is None:
            return None
        start, size = r
        return _frozen(self._pose_cov[start : start + size, start : start + size])

    def get_cam_cross_cov_from_world(self, image_id1: int, image_id2: int) -> np.ndarray | None:
        """Cross-covariance block between the poses of two images."""
        r1 = self._pose_ranges.get(image_id1)
        r2 = self._pose_ranges.get(image_id2)
        if r1 is None or r2 is None:
            return None
        return _frozen(self._pose_cov[r1[0] : r1[0] + r1[1], r2[0] : r2[0] + r2[1]])

    def get_point_cov(self, point3D_id: int) -> np.ndarray | None:
        idx = self._point_index.get(point3D_id)
        if idx is None:
            return None
        return _frozen(self._point_covs[idx])

    def get_other_params_cov(self, params: np.ndarray | None) -> np.ndarray | None:
        if not isinstance(params, np.ndarray):
            return None
        cov = self._other_covs.get(block_key(params))
        return None if cov is None else _frozen(cov)


def _frozen(a: np.ndarray) -> np.ndarray:
    out = np.array(a, dtype=np.float64)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class _ColumnLayout:
    """
    Column ranges of the Jacobian: [poses | others | points].

    Poses and others form the reduced system, indexed by image id and block
    address; points are indexed by their position in `point3D_ids`.
    """

    blocks: list[np.ndarray]
    pose_ranges: dict[int, tuple[int, int]]
    other_ranges: dict[int, tuple[int, int]]
    num_pose_cols: int
    num_reduced_cols: int
    point3D_ids: np.ndarray

    @property
    def num_points(self) -> int:
        return int(self.point3D_ids.size)


@dataclass(frozen=True)
class _SchurComplement:
    S: np.ndarray  # (n_c, n_c) dense reduced system
    H_pp_inv: np.ndarray  # (N, 3, 3) damped point blocks, inverted
    T: csc_matrix  # (n_c, 3N) H_cp H_pp^-1


def _build_layout(
    problem: Problem,
    poses: list[PoseParam],
    others: list[np.ndarray],
    points: list[PointParam],
) -> _ColumnLayout:
    blocks: list[np.ndarray] = []
    pose_ranges: dict[int, tuple[int, int]] = {}
    other_ranges: dict[int, tuple[int, int]] = {}
    offset = 0

    for pose in poses:
        pose_blocks = pose.blocks()
        if not pose_blocks:
            continue
        size = sum(parameter_block_tangent_size(problem, b) for b in pose_blocks)
        pose_ranges[pose.image_id] = (offset, size)
        blocks.extend(pose_blocks)
        offset += size
    num_pose_cols = offset

    for values in others:
        size = parameter_block_tangent_size(problem, values)
        other_ranges[block_key(values)] = (offset, size)
        blocks.append(values)
        offset += size
    num_reduced_cols = offset

    point3D_ids: list[int] = []
    for point in points:
        if point.xyz is None:
            continue
        if parameter_block_tangent_size(problem, point.xyz) != 3:
            raise ValueError(f"point {point.point3D_id} must have a 3-dimensional tangent space")
        blocks.append(point.xyz)
        point3D_ids.append(point.point3D_id)

    return _ColumnLayout(
        blocks=blocks,
        pose_ranges=pose_ranges,
        other_ranges=other_ranges,
        num_pose_cols=num_pose_cols,
        num_reduced_cols=num_reduced_cols,
        point3D_ids=np.asarray(point3D_ids, dtype=np.int64),
    )


def _singular_eigenvalues(eigvals: np.ndarray, rtol: float) -> np.ndarray:
    """Mask of singular rows for ascending eigenvalues shaped (..., n)."""
    largest = eigvals[..., -1:]
    return (
        ~np.all(np.isfinite(eigvals), axis=-1)
        | (largest[..., 0] <= 0.0)
        | np.any(eigvals <= rtol * largest, axis=-1)
    )


def _invert_point_blocks(
    blocks: np.ndarray, damping: float, rtol: float, point3D_ids: np.ndarray
) -> np.ndarray | None:
    damped = blocks + damping * np.eye(3, dtype=np.float64)
    if not np.all(np.isfinite(damped)):
        logger.warning("Point blocks of the information matrix are not finite")
        return None
    eigvals, eigvecs = np.linalg.eigh(damped)
    singular = _singular_eigenvalues(eigvals, rtol)
    if np.any(singular):
        logger.warning(
            "%d of %d point blocks are singular (e.g. point3D_id=%d) with damping=%g; "
            "increase damping or fix more parameters",
            int(np.sum(singular)),
            int(singular.size),
            int(point3D_ids[np.argmax(singular)]),
            damping,
        )
        return None
    inv = np.einsum("nij,nj,nkj->nik", eigvecs, 1.0 / eigvals, eigvecs)
    return 0.5 * (inv + inv.transpose(0, 2, 1))


def _compute_schur_complement(
    problem: Problem, layout: _ColumnLayout, damping: float, rtol: float
) -> _SchurComplement | None:
    from scipy.sparse import bsr_matrix, csc_matrix  # type: ignore

    _, J = problem.evaluate(layout.blocks)
    assert J is not None
    n_c = layout.num_reduced_cols
    N = layout.num_points
    if J.shape[1] != n_c + 3 * N:
        raise ValueError("Jacobian columns do not match the parameter layout")

    J = J.tocsc()
    J_c = J[:, :n_c]
    J_p = J[:, n_c:]

    H_cc = (J_c.T @ J_c).toarray()
    if N == 0:
        return _SchurComplement(S=H_cc, H_pp_inv=np.zeros((0, 3, 3), dtype=np.float64), T=csc_matrix((n_c, 0)))
    H_cp = (J_c.T @ J_p).tocsr()
    H_pp = (J_p.T @ J_p).tocoo()

    blk_row = H_pp.row // 3
    if np.any(blk_row != H_pp.col // 3):
        raise ValueError("point parameter blocks must not share residuals")
    blocks = np.zeros((N, 3, 3), dtype=np.float64)
    np.add.at(blocks, (blk_row, H_pp.row % 3, H_pp.col % 3), H_pp.data)

    H_pp_inv = _invert_point_blocks(blocks, damping, rtol, layout.point3D_ids)
    if H_pp_inv is None:
        return None

    W = bsr_matrix((H_pp_inv, np.arange(N), np.arange(N + 1)), shape=(3 * N, 3 * N))
    T = (H_cp @ W).tocsc()
    S = H_cc - (T @ H_cp.T).toarray()
    return _SchurComplement(S=S, H_pp_inv=H_pp_inv, T=T)


def _invert_reduced_system(S: np.ndarray, rtol: float) -> np.ndarray | None:
    """
    Inverse of the Schur complement, or None when it is rank deficient (e.g.
    an unfixed gauge). The test and inversion run on the Jacobi-scaled matrix.
    """
    from scipy.linalg import eigh  # type: ignore

    n = S.shape[0]
    if n == 0:
        return np.zeros((0, 0), dtype=np.float64)
    if not np.all(np.isfinite(S)):
        logger.warning("Schur complement is not finite")
        return None

    d = np.diag(S).copy()
    if np.any(d <= 0.0):
        logger.warning("Schur complement has %d unconstrained parameters", int(np.sum(d <= 0.0)))
        return None
    scale = 1.0 / np.sqrt(d)
    S_scaled = S * np.outer(scale, scale)
    eigvals, eigvecs = eigh(0.5 * (S_scaled + S_scaled.T))
    if _singular_eigenvalues(eigvals, rtol):
        logger.warning(
            "Schur complement is rank deficient (%d of %d eigenvalues below tolerance); "
            "fix more parameters to remove the gauge freedom",
            int(np.sum(eigvals <= rtol * eigvals[-1])),
            n,
        )
        return None

    S_inv = (eigvecs / eigvals) @ eigvecs.T
    S_inv *= np.outer(scale, scale)
    return 0.5 * (S_inv + S_inv.T)


def _recover_point_covs(schur: _SchurComplement, S_inv: np.ndarray, chunk_size: int) -> np.ndarray:
    """
    Cov(p) = H_pp^-1[p] + T_p^T S^-1 T_p with T_p = H_cp[:, p] H_pp^-1[p],
    evaluated in batches so that only (n_c, 3 * chunk_size) is ever dense.
    """
    covs = schur.H_pp_inv.copy()
    N = covs.shape[0]
    n_c = S_inv.shape[0]
    if n_c == 0:
        return covs
    for start in range(0, N, chunk_size):
        stop = min(start + chunk_size, N)
        k = stop - start
        T_chunk = schur.T[:, 3 * start : 3 * stop].toarray()
        M = S_inv @ T_chunk
        covs[start:stop] += np.einsum("nki,nkj->kij", T_chunk.reshape(n_c, k, 3), M.reshape(n_c, k, 3))
    return 0.5 * (covs + covs.transpose(0, 2, 1))


def estimate_ba_covariance_from_problem(
    options: BACovarianceOptions,
    reconstruction: Reconstruction,
    problem: Problem,
) -> BACovariance | None:
    """
    Estimate tangent-space covariances of the requested parameter groups.

    Points are eliminated through the Schur complement of the Gauss-Newton
    information matrix J^T J; the reduced pose/other system is inverted
    densely. Returns None when the point elimination or the reduced system
    is numerically singular. The problem is only read.
    """
    if not isinstance(options, BACovarianceOptions):
        raise TypeError("options must be a BACovarianceOptions")
    rtol = DEFAULT_EIGENVALUE_RTOL if options.eigenvalue_rtol is None else float(options.eigenvalue_rtol)

    t0 = time.perf_counter()
    poses = get_pose_params(reconstruction, problem)
    points = get_point_params(reconstruction, problem)
    others = get_other_params(problem, poses, points)
    layout = _build_layout(problem, poses, others, points)
    logger.debug(
        "Covariance layout: %d pose columns, %d other columns, %d points",
        layout.num_pose_cols,
        layout.num_reduced_cols - layout.num_pose_cols,
        layout.num_points,
    )

    schur = _compute_schur_complement(problem, layout, float(options.damping), rtol)
    if schur is None:
        return None
    t1 = time.perf_counter()
    logger.debug("Schur complement (%d x %d) computed in %.3fs", schur.S.shape[0], schur.S.shape[1], t1 - t0)

    S_inv = _invert_reduced_system(schur.S, rtol)
    if S_inv is None:
        return None

    pose_ranges: dict[int, tuple[int, int]] = {}
    pose_cov = np.zeros((0, 0), dtype=np.float64)
    if options.estimate_pose_covs:
        pose_ranges = layout.pose_ranges
        pose_cov = S_inv[: layout.num_pose_cols, : layout.num_pose_cols]

    other_covs: list[tuple[np.ndarray, np.ndarray]] = []
    if options.estimate_other_covs:
        for values in others:
            start, size = layout.other_ranges[block_key(values)]
            other_covs.append((values, S_inv[start : start + size, start : start + size]))

    point3D_ids = np.zeros((0,), dtype=np.int64)
    point_covs = np.zeros((0, 3, 3), dtype=np.float64)
    if options.estimate_point_covs:
        point3D_ids = layout.point3D_ids
        if options.point_covariance == "conditional":
            point_covs = schur.H_pp_inv
        else:
            point_covs = _recover_point_covs(schur, S_inv, int(options.point_chunk_size))

    logger.debug("Covariance estimation finished in %.3fs", time.perf_counter() - t0)
    return BACovariance(
        pose_ranges=pose_ranges,
        pose_cov=pose_cov,
        point3D_ids=point3D_ids,
        point_covs=point_covs,
        other_covs=other_covs,
    )


def estimate_ba_covariance(
    options: BACovarianceOptions,
    reconstruction: Reconstruction,
    bundle_adjuster: BundleAdjuster,
) -> BACovariance | None:
    return estimate_ba_covariance_from_problem(options, reconstruction, bundle_adjuster.problem)
