from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Iterator, Protocol, Sequence

import numpy as np

from bacov.core.manifold import Manifold

if TYPE_CHECKING:
    from scipy.sparse import csr_matrix


class CostFunction(Protocol):
    num_residuals: int
    parameter_block_sizes: tuple[int, ...]

    def evaluate(
        self, *values: np.ndarray, jacobians: bool = True
    ) -> tuple[np.ndarray, list[np.ndarray] | None]:
        """Residuals (num_residuals,) and ambient Jacobians, one per block."""
        ...


def block_key(values: np.ndarray) -> int:
    """
    Identity of a parameter block: the address of its first element.

    Two views starting at the same memory are the same block, copies never are.
    """
    return int(values.__array_interface__["data"][0])


@dataclass
class ParameterBlock:
    values: np.ndarray
    manifold: Manifold | None = None
    constant: bool = False

    @property
    def key(self) -> int:
        return block_key(self.values)

    @property
    def size(self) -> int:
        return int(self.values.size)

    @property
    def tangent_size(self) -> int:
        if self.manifold is None:
            return self.size
        return int(self.manifold.tangent_size)

    @property
    def is_effectively_constant(self) -> bool:
        return self.constant or self.tangent_size == 0

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        if self.manifold is None:
            return x + delta
        return self.manifold.plus(x, delta)

    def plus_jacobian(self) -> np.ndarray:
        if self.manifold is None:
            return np.eye(self.size, dtype=np.float64)
        return self.manifold.plus_jacobian(self.values)


@dataclass(frozen=True)
class ResidualBlock:
    cost_function: CostFunction
    parameter_blocks: tuple[ParameterBlock, ...]
    row_offset: int


class Problem:
    """
    Nonlinear least-squares problem over numpy parameter blocks.

    Parameter blocks are 1-D float64 arrays owned by the caller (typically the
    reconstruction); the problem only keeps references and evaluates residuals
    and tangent-space Jacobians at their current values.
    """

    def __init__(self) -> None:
        self._blocks: dict[int, ParameterBlock] = {}
        self._residual_blocks: list[ResidualBlock] = []
        self._num_residuals = 0

    def _block(self, values: np.ndarray) -> ParameterBlock:
        try:
            return self._blocks[block_key(values)]
        except KeyError:
            raise ValueError("parameter block is not part of the problem") from None

    def add_parameter_block(self, values: np.ndarray, manifold: Manifold | None = None) -> ParameterBlock:
        if not isinstance(values, np.ndarray) or values.dtype != np.float64 or values.ndim != 1:
            raise ValueError("parameter blocks must be 1-D float64 numpy arrays")
        if not values.flags.c_contiguous:
            raise ValueError("parameter blocks must be contiguous")
        key = block_key(values)
        block = self._blocks.get(key)
        if block is not None:
            if block.size != values.size:
                raise ValueError("parameter block aliases an existing block with a different size")
        else:
            block = ParameterBlock(values=values)
            self._blocks[key] = block
        if manifold is not None:
            self.set_manifold(values, manifold)
        return block

    def set_manifold(self, values: np.ndarray, manifold: Manifold | None) -> None:
        block = self._block(values)
        if manifold is not None and manifold.ambient_size != block.size:
            raise ValueError("manifold ambient size does not match the parameter block size")
        block.manifold = manifold

    def manifold(self, values: np.ndarray) -> Manifold | None:
        return self._block(values).manifold

    def add_residual_block(self, cost_function: CostFunction, *values: np.ndarray) -> ResidualBlock:
        sizes = tuple(int(s) for s in cost_function.parameter_block_sizes)
        if len(values) != len(sizes):
            raise ValueError("number of parameter blocks does not match the cost function")
        blocks: list[ParameterBlock] = []
        for v, size in zip(values, sizes):
            if v.size != size:
                raise ValueError(f"parameter block of size {v.size} passed where {size} was expected")
            blocks.append(self.add_parameter_block(v))
        rb = ResidualBlock(cost_function=cost_function, parameter_blocks=tuple(blocks), row_offset=self._num_residuals)
        self._residual_blocks.append(rb)
        self._num_residuals += int(cost_function.num_residuals)
        return rb

    def has_parameter_block(self, values: np.ndarray | None) -> bool:
        if not isinstance(values, np.ndarray):
            return False
        return block_key(values) in self._blocks

    def set_parameter_block_constant(self, values: np.ndarray) -> None:
        self._block(values).constant = True

    def set_parameter_block_variable(self, values: np.ndarray) -> None:
        self._block(values).constant = False

    def is_parameter_block_constant(self, values: np.ndarray) -> bool:
        """True when marked constant or when its manifold leaves no free coordinate."""
        return self._block(values).is_effectively_constant

    def parameter_block_size(self, values: np.ndarray) -> int:
        return self._block(values).size

    def parameter_block_tangent_size(self, values: np.ndarray) -> int:
        return self._block(values).tangent_size

    def parameter_blocks(self) -> list[np.ndarray]:
        return [b.values for b in self._blocks.values()]

    def variable_parameter_blocks(self) -> list[np.ndarray]:
        return [b.values for b in self._blocks.values() if not b.is_effectively_constant]

    @property
    def num_residuals(self) -> int:
        return self._num_residuals

    @property
    def num_residual_blocks(self) -> int:
        return len(self._residual_blocks)

    @contextlib.contextmanager
    def constant_blocks(self, values: Iterable[np.ndarray]) -> Iterator[None]:
        """Temporarily mark blocks constant; the previous flags are restored on exit."""
        blocks = [self._block(v) for v in values]
        previous = [(b, b.constant) for b in blocks]
        try:
            for b in blocks:
                b.constant = True
            yield
        finally:
            for b, was_constant in previous:
                b.constant = was_constant

    def plus(self, values: Sequence[np.ndarray], x0: Sequence[np.ndarray], delta: np.ndarray) -> None:
        """
        Write plus(x0_i, delta_i) into each block, with delta laid out in
        tangent coordinates in the order of `values`.
        """
        delta = np.asarray(delta, dtype=np.float64).reshape(-1)
        offset = 0
        for v, x in zip(values, x0):
            block = self._block(v)
            n = block.tangent_size
            block.values[:] = block.plus(x, delta[offset : offset + n])
            offset += n
        if offset != delta.size:
            raise ValueError("tangent step size does not match the parameter blocks")

    def evaluate(
        self, values: Sequence[np.ndarray] | None = None, *, jacobian: bool = True
    ) -> tuple[np.ndarray, csr_matrix | None]:
        """
        Residuals and the Jacobian at the current parameter values.

        Jacobian columns are the tangent coordinates of `values` (default: all
        variable blocks in insertion order), laid out in that order. Constant
        blocks contribute no columns.
        """
        from scipy.sparse import coo_matrix  # type: ignore

        if values is None:
            values = self.variable_parameter_blocks()

        col_offsets: dict[int, int] = {}
        plus_jacobians: dict[int, np.ndarray] = {}
        num_cols = 0
        for v in values:
            block = self._block(v)
            if block.is_effectively_constant:
                continue
            if block.key in col_offsets:
                raise ValueError("parameter block listed twice")
            col_offsets[block.key] = num_cols
            num_cols += block.tangent_size
            if jacobian:
                plus_jacobians[block.key] = block.plus_jacobian()

        residuals = np.empty((self._num_residuals,), dtype=np.float64)
        rows: list[np.ndarray] = []
        cols: list[np.ndarray] = []
        vals: list[np.ndarray] = []
        for rb in self._residual_blocks:
            m = int(rb.cost_function.num_residuals)
            r, jacs = rb.cost_function.evaluate(*(b.values for b in rb.parameter_blocks), jacobians=jacobian)
            residuals[rb.row_offset : rb.row_offset + m] = r
            if not jacobian:
                continue
            assert jacs is not None
            for block, J in zip(rb.parameter_blocks, jacs):
                col0 = col_offsets.get(block.key)
                if col0 is None:
                    continue
                J_tangent = np.asarray(J, dtype=np.float64).reshape(m, block.size) @ plus_jacobians[block.key]
                k = J_tangent.shape[1]
                rows.append(rb.row_offset + np.repeat(np.arange(m), k))
                cols.append(col0 + np.tile(np.arange(k), m))
                vals.append(J_tangent.reshape(-1))

        if not jacobian:
            return residuals, None

        if rows:
            jac = coo_matrix(
                (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                shape=(self._num_residuals, num_cols),
            ).tocsr()
        else:
            jac = coo_matrix((self._num_residuals, num_cols), dtype=np.float64).tocsr()
        return residuals, jac
