import numpy as np
import pytest

from bacov.core.manifold import EuclideanManifold, QuaternionManifold, SubsetManifold
from bacov.core.problem import Problem, block_key
from bacov.core.rotation import (
    normalize_quaternion,
    quaternion_to_rotation_matrix,
    rotate_point_quaternion_jacobian,
)


def _random_quaternion(rng: np.random.Generator) -> np.ndarray:
    return normalize_quaternion(rng.normal(size=4))


def _numeric_plus_jacobian(manifold, x: np.ndarray, eps: float = 1e-7) -> np.ndarray:
    cols = []
    for i in range(manifold.tangent_size):
        d = np.zeros((manifold.tangent_size,))
        d[i] = eps
        cols.append((manifold.plus(x, d) - manifold.plus(x, -d)) / (2 * eps))
    return np.stack(cols, axis=1)


class _LinearCost:
    """r = A x + b over a single block; used to check Jacobian bookkeeping."""

    def __init__(self, A: np.ndarray, b: np.ndarray) -> None:
        self.A = A
        self.b = b
        self.num_residuals = A.shape[0]
        self.parameter_block_sizes = (A.shape[1],)

    def evaluate(self, x, jacobians=True):
        return self.A @ x + self.b, ([self.A] if jacobians else None)


def test_quaternion_rotation_matches_scipy():
    from scipy.spatial.transform import Rotation as R

    rng = np.random.default_rng(0)
    for _ in range(10):
        q = _random_quaternion(rng)
        assert np.allclose(quaternion_to_rotation_matrix(q), R.from_quat(q).as_matrix(), atol=1e-12)


def test_quaternion_plus_stays_on_sphere_and_jacobian_matches_finite_differences():
    rng = np.random.default_rng(1)
    m = QuaternionManifold()
    q = _random_quaternion(rng)
    q2 = m.plus(q, rng.normal(scale=0.3, size=3))
    assert abs(np.linalg.norm(q2) - 1.0) < 1e-12
    assert np.allclose(m.plus(q, np.zeros(3)), q)
    assert np.allclose(m.plus_jacobian(q), _numeric_plus_jacobian(m, q), atol=1e-8)


def test_subset_manifold_keeps_constant_coordinates():
    m = SubsetManifold(3, (2, 0))
    assert m.constant_indices == (0, 2)
    assert m.tangent_size == 1
    x = np.array([1.0, 2.0, 3.0])
    assert np.allclose(m.plus(x, np.array([0.5])), [1.0, 2.5, 3.0])
    assert np.allclose(m.plus_jacobian(x), _numeric_plus_jacobian(m, x))
    with pytest.raises(ValueError):
        SubsetManifold(3, (3,))


def test_rotate_point_jacobian_in_tangent_space():
    rng = np.random.default_rng(2)
    m = QuaternionManifold()
    q = _random_quaternion(rng)
    X = rng.normal(size=3)
    analytic = rotate_point_quaternion_jacobian(q, X) @ m.plus_jacobian(q)

    eps = 1e-7
    numeric = np.zeros((3, 3))
    for i in range(3):
        d = np.zeros(3)
        d[i] = eps
        numeric[:, i] = (
            quaternion_to_rotation_matrix(m.plus(q, d)) @ X - quaternion_to_rotation_matrix(m.plus(q, -d)) @ X
        ) / (2 * eps)
    assert np.allclose(analytic, numeric, atol=1e-7)


def test_block_identity_is_by_address():
    problem = Problem()
    storage = np.zeros((7,), dtype=np.float64)
    head = storage[:4]
    problem.add_parameter_block(head)

    assert problem.has_parameter_block(storage[:4])
    assert not problem.has_parameter_block(head.copy())
    assert not problem.has_parameter_block(storage[4:])
    assert not problem.has_parameter_block(None)
    assert block_key(storage[:4]) == block_key(head)

    with pytest.raises(ValueError):
        problem.add_parameter_block(storage[:3])
    with pytest.raises(ValueError):
        problem.add_parameter_block(np.zeros((3,), dtype=np.float32))


def test_evaluate_jacobian_in_tangent_space_skips_constant_blocks():
    rng = np.random.default_rng(3)
    problem = Problem()
    x = rng.normal(size=3)
    y = rng.normal(size=2)
    A = rng.normal(size=(4, 3))
    B = rng.normal(size=(2, 2))
    problem.add_residual_block(_LinearCost(A, np.zeros(4)), x)
    problem.add_residual_block(_LinearCost(B, np.ones(2)), y)
    problem.set_manifold(x, SubsetManifold(3, (1,)))

    residuals, J = problem.evaluate()
    assert residuals.shape == (6,)
    assert np.allclose(residuals[:4], A @ x)
    assert J.shape == (6, 4)
    J = J.toarray()
    assert np.allclose(J[:4, :2], A[:, [0, 2]])
    assert np.allclose(J[4:, 2:], B)
    assert np.allclose(J[:4, 2:], 0.0)

    problem.set_parameter_block_constant(y)
    _, J = problem.evaluate()
    assert J.shape == (6, 2)

    problem.set_manifold(y, EuclideanManifold(2))
    problem.set_parameter_block_variable(y)
    _, J = problem.evaluate([y, x])
    assert np.allclose(J.toarray()[4:, :2], B)


def test_fully_fixed_subset_is_constant():
    problem = Problem()
    x = np.zeros((3,), dtype=np.float64)
    problem.add_parameter_block(x, SubsetManifold(3, (0, 1, 2)))
    assert problem.is_parameter_block_constant(x)
    assert problem.variable_parameter_blocks() == []


def test_constant_blocks_context_restores_state_on_error():
    problem = Problem()
    a = np.zeros((2,), dtype=np.float64)
    b = np.zeros((2,), dtype=np.float64)
    problem.add_parameter_block(a)
    problem.add_parameter_block(b)
    problem.set_parameter_block_constant(b)

    with pytest.raises(RuntimeError):
        with problem.constant_blocks([a, b]):
            assert problem.is_parameter_block_constant(a)
            raise RuntimeError("boom")

    assert not problem.is_parameter_block_constant(a)
    assert problem.is_parameter_block_constant(b)


def test_plus_writes_in_place():
    problem = Problem()
    q = np.array([0.0, 0.0, 0.0, 1.0])
    t = np.zeros((3,), dtype=np.float64)
    problem.add_parameter_block(q, QuaternionManifold())
    problem.add_parameter_block(t)
    x0 = [q.copy(), t.copy()]
    problem.plus([q, t], x0, np.array([0.0, 0.0, 0.1, 1.0, 2.0, 3.0]))
    assert np.allclose(t, [1.0, 2.0, 3.0])
    assert np.allclose(q, [0.0, 0.0, np.sin(0.1), np.cos(0.1)])
    with pytest.raises(ValueError):
        problem.plus([q, t], x0, np.zeros(7))
