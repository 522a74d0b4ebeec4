import numpy as np
import warp as wp

from backward import grad_quat_normalize, grad_rotation_matrix_to_quaternion, grad_unit_quaternion
from utils.math_utils import (
    conjugate_quaternion,
    normalize_quaternion,
    quaternion_multiply,
    quaternion_to_matrix,
    random_quaternion,
)
from utils.wp_utils import (
    mat_t_vec,
    mat_vec,
    quat_conjugate,
    quat_normalize,
    quat_to_rotation_matrix,
    to_warp_array,
)


@wp.kernel
def rotation_kernel(
    qs: wp.array(dtype=wp.vec4),
    vs: wp.array(dtype=wp.vec3),
    normalized: wp.array(dtype=wp.vec4),
    conjugated: wp.array(dtype=wp.vec4),
    rotations: wp.array(dtype=wp.mat33),
    rotated: wp.array(dtype=wp.vec3),
    restored: wp.array(dtype=wp.vec3),
):
    i = wp.tid()
    q = qs[i]
    normalized[i] = quat_normalize(q)
    conjugated[i] = quat_conjugate(q)
    R = quat_to_rotation_matrix(q)
    rotations[i] = R
    rotated[i] = mat_vec(R, vs[i])
    restored[i] = mat_t_vec(R, mat_vec(R, vs[i]))


@wp.kernel
def quat_grad_kernel(
    grad_R: wp.array(dtype=wp.mat33),
    qs: wp.array(dtype=wp.vec4),
    fused: wp.array(dtype=wp.vec4),
    composed: wp.array(dtype=wp.vec4),
):
    i = wp.tid()
    q = qs[i]
    fused[i] = grad_rotation_matrix_to_quaternion(grad_R[i], q)
    composed[i] = grad_quat_normalize(q, grad_unit_quaternion(grad_R[i], quat_normalize(q)))


def run_rotation_kernel(qs, vs):
    n = len(qs)
    device = "cpu"
    outputs = [
        wp.zeros(n, dtype=wp.vec4, device=device),
        wp.zeros(n, dtype=wp.vec4, device=device),
        wp.zeros(n, dtype=wp.mat33, device=device),
        wp.zeros(n, dtype=wp.vec3, device=device),
        wp.zeros(n, dtype=wp.vec3, device=device),
    ]
    wp.launch(
        rotation_kernel,
        dim=n,
        inputs=[to_warp_array(qs, wp.vec4, device=device), to_warp_array(vs, wp.vec3, device=device)],
        outputs=outputs,
        device=device,
    )
    return [out.numpy() for out in outputs]


def run_quat_grad_kernel(grad_R, qs):
    n = len(qs)
    device = "cpu"
    fused = wp.zeros(n, dtype=wp.vec4, device=device)
    composed = wp.zeros(n, dtype=wp.vec4, device=device)
    wp.launch(
        quat_grad_kernel,
        dim=n,
        inputs=[to_warp_array(grad_R, wp.mat33, device=device), to_warp_array(qs, wp.vec4, device=device)],
        outputs=[fused, composed],
        device=device,
    )
    return fused.numpy(), composed.numpy()


def numeric_quat_grad(G, q, eps=1e-6):
    grad = np.zeros(4)
    for k in range(4):
        step = np.zeros(4)
        step[k] = eps
        plus = np.sum(G * quaternion_to_matrix(q + step))
        minus = np.sum(G * quaternion_to_matrix(q - step))
        grad[k] = (plus - minus) / (2.0 * eps)
    return grad


def test_rotation_matrix_matches_host_formula(rng):
    qs = (random_quaternion(rng, 16) * rng.uniform(0.3, 3.0, size=(16, 1))).astype(np.float32)
    vs = rng.normal(size=(16, 3)).astype(np.float32)

    normalized, conjugated, rotations, rotated, restored = run_rotation_kernel(qs, vs)

    np.testing.assert_allclose(normalized, normalize_quaternion(qs), atol=1e-6)
    np.testing.assert_allclose(conjugated, conjugate_quaternion(qs), atol=0)
    np.testing.assert_allclose(rotations, quaternion_to_matrix(qs), atol=1e-5)
    np.testing.assert_allclose(rotated, np.einsum('nij,nj->ni', quaternion_to_matrix(qs), vs), atol=1e-5)
    # R^T undoes R
    np.testing.assert_allclose(restored, vs, atol=1e-5)


def test_rotation_matrix_is_orthonormal(rng):
    qs = random_quaternion(rng, 8).astype(np.float32)
    _, _, rotations, _, _ = run_rotation_kernel(qs, np.zeros((8, 3), dtype=np.float32))

    for R in rotations:
        np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-5)
        assert np.isclose(np.linalg.det(R), 1.0, atol=1e-5)


def test_conjugate_is_inverse_rotation(rng):
    q = random_quaternion(rng)
    R = quaternion_to_matrix(q)
    np.testing.assert_allclose(quaternion_to_matrix(conjugate_quaternion(q)), R.T, atol=1e-12)


def test_zero_quaternion_propagates_nan():
    qs = np.zeros((1, 4), dtype=np.float32)
    normalized, _, rotations, _, _ = run_rotation_kernel(qs, np.ones((1, 3), dtype=np.float32))

    assert np.all(np.isnan(normalized))
    assert np.all(np.isnan(rotations))


def test_quaternion_multiply_composes_rotations(rng):
    a, b = random_quaternion(rng, 2)
    np.testing.assert_allclose(
        quaternion_to_matrix(quaternion_multiply(a, b)),
        quaternion_to_matrix(a) @ quaternion_to_matrix(b),
        atol=1e-12,
    )


def test_quaternion_backprop_matches_finite_differences(rng):
    n = 12
    qs = (random_quaternion(rng, n) * rng.uniform(0.5, 2.0, size=(n, 1))).astype(np.float32)
    grad_R = rng.normal(size=(n, 3, 3)).astype(np.float32)

    fused, composed = run_quat_grad_kernel(grad_R, qs)

    for i in range(n):
        expected = numeric_quat_grad(grad_R[i].astype(np.float64), qs[i].astype(np.float64))
        np.testing.assert_allclose(fused[i], expected, rtol=1e-4, atol=1e-4)
        np.testing.assert_allclose(composed[i], expected, rtol=1e-4, atol=1e-4)


def test_fused_and_composed_quaternion_backprop_agree(rng):
    n = 32
    qs = (random_quaternion(rng, n) * rng.uniform(0.1, 5.0, size=(n, 1))).astype(np.float32)
    grad_R = rng.normal(size=(n, 3, 3)).astype(np.float32)

    fused, composed = run_quat_grad_kernel(grad_R, qs)

    np.testing.assert_allclose(fused, composed, rtol=1e-4, atol=1e-5)


def test_quaternion_gradient_has_no_radial_component(rng):
    # R(q) does not depend on |q|, so dL/dq is orthogonal to q
    n = 8
    qs = (random_quaternion(rng, n) * rng.uniform(0.5, 2.0, size=(n, 1))).astype(np.float32)
    grad_R = rng.normal(size=(n, 3, 3)).astype(np.float32)

    fused, _ = run_quat_grad_kernel(grad_R, qs)

    radial = np.einsum('ni,ni->n', fused, normalize_quaternion(qs))
    np.testing.assert_allclose(radial, 0.0, atol=1e-4)
