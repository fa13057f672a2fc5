import numpy as np
import pytest

from bacov.core.camera_models import CAMERA_MODELS, camera_model_from_name
from bacov.core.manifold import QuaternionManifold
from bacov.core.problem import Problem
from bacov.core.rotation import normalize_quaternion
from bacov.estimators.cost_functions import ReprojErrorCost

_PARAMS = {
    "SIMPLE_PINHOLE": [800.0, 320.0, 240.0],
    "PINHOLE": [800.0, 810.0, 320.0, 240.0],
    "SIMPLE_RADIAL": [800.0, 320.0, 240.0, 0.03],
}


def _central_difference(f, x: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    cols = []
    for i in range(x.size):
        d = np.zeros_like(x)
        d[i] = eps
        cols.append((f(x + d) - f(x - d)) / (2 * eps))
    return np.stack(cols, axis=-1)


@pytest.mark.parametrize("name", sorted(_PARAMS))
def test_projection_jacobians_match_finite_differences(name: str):
    model = camera_model_from_name(name)
    params = np.asarray(_PARAMS[name], dtype=np.float64)
    assert model.num_params == params.size

    rng = np.random.default_rng(0)
    xyz = np.column_stack([rng.uniform(-0.5, 0.5, size=5), rng.uniform(-0.5, 0.5, size=5), rng.uniform(2, 4, size=5)])
    xy, d_xyz, d_params = model.img_from_cam_with_jacobians(params, xyz)
    assert np.allclose(xy, model.img_from_cam(params, xyz))

    for n in range(xyz.shape[0]):
        num_xyz = _central_difference(lambda p: model.img_from_cam(params, p[None, :])[0], xyz[n])
        num_params = _central_difference(lambda c: model.img_from_cam(c, xyz[n][None, :])[0], params)
        assert np.allclose(d_xyz[n], num_xyz, atol=1e-5)
        assert np.allclose(d_params[n], num_params, atol=1e-5)


def test_unknown_camera_model():
    assert "SIMPLE_RADIAL" in CAMERA_MODELS
    with pytest.raises(ValueError):
        camera_model_from_name("FISHEYE_42")


def test_reprojection_cost_tangent_jacobian():
    model = camera_model_from_name("SIMPLE_RADIAL")
    rotation = normalize_quaternion(np.array([0.1, -0.2, 0.05, 1.0]))
    translation = np.array([0.1, -0.2, 3.0])
    xyz = np.array([0.3, 0.2, 0.5])
    params = np.asarray(_PARAMS["SIMPLE_RADIAL"], dtype=np.float64)
    observed = np.array([400.0, 300.0])

    problem = Problem()
    problem.add_residual_block(ReprojErrorCost(model, observed), rotation, translation, xyz, params)
    problem.set_manifold(rotation, QuaternionManifold())
    blocks = [rotation, translation, xyz, params]
    x0 = [b.copy() for b in blocks]

    _, J = problem.evaluate(blocks)
    assert J.shape == (2, 3 + 3 + 3 + 4)

    def residuals(delta: np.ndarray) -> np.ndarray:
        problem.plus(blocks, x0, delta)
        r, _ = problem.evaluate(blocks, jacobian=False)
        return r

    delta0 = np.zeros(13)
    numeric = _central_difference(residuals, delta0, eps=1e-7)
    problem.plus(blocks, x0, delta0)
    scale = np.maximum(1.0, np.abs(numeric))
    assert np.all(np.abs(J.toarray() - numeric) / scale < 1e-5)
