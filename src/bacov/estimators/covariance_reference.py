from __future__ import annotations

from typing import Sequence

import numpy as np

from bacov.core.problem import Problem, block_key


class ReferenceCovariance:
    """
    Brute-force covariance of all variable blocks of a problem: the
    pseudo-inverse of the dense J^T J. Meant for validation on small
    problems; the Schur-complement estimator does not depend on it.
    """

    def __init__(self, problem: Problem) -> None:
        from scipy.linalg import pinvh  # type: ignore

        self._problem = problem
        blocks = problem.variable_parameter_blocks()
        self._ranges: dict[int, tuple[int, int]] = {}
        offset = 0
        for values in blocks:
            size = problem.parameter_block_tangent_size(values)
            self._ranges[block_key(values)] = (offset, size)
            offset += size

        _, J = problem.evaluate(blocks)
        assert J is not None
        H = (J.T @ J).toarray()
        # Jacobi scaling keeps pinvh's cutoff meaningful when parameters
        # live on very different scales (pixels vs. radians vs. distortion).
        d = np.diag(H).copy()
        scale = np.where(d > 0.0, 1.0 / np.sqrt(np.where(d > 0.0, d, 1.0)), 1.0)
        H_scaled = H * np.outer(scale, scale)
        self._cov = pinvh(0.5 * (H_scaled + H_scaled.T)) * np.outer(scale, scale)

    def covariance(self, blocks: Sequence[np.ndarray]) -> np.ndarray:
        """Joint covariance of `blocks`, in their tangent coordinates and in order."""
        idxs: list[np.ndarray] = []
        for values in blocks:
            r = self._ranges.get(block_key(values))
            if r is None:
                raise ValueError("block is not a variable parameter block of the problem")
            idxs.append(np.arange(r[0], r[0] + r[1]))
        idx = np.concatenate(idxs) if idxs else np.zeros((0,), dtype=np.int64)
        return self._cov[np.ix_(idx, idx)].copy()


def compute_reference_covariance(problem: Problem, blocks: Sequence[np.ndarray]) -> np.ndarray:
    return ReferenceCovariance(problem).covariance(blocks)
