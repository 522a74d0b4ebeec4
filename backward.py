import numpy as np
import warp as wp
from loguru import logger

from config import *
from forward import compute_selection, prepare_inputs
from structures import Selection
from utils.wp_utils import (
    to_warp_array,
    wp_vec3_abs,
    wp_vec3_sign,
    wp_vec3_mul_element,
    wp_vec3_clamp_min,
    quat_normalize,
    quat_conjugate,
    quat_to_rotation_matrix,
    mat_vec,
    mat_t_vec,
)


@wp.func
def rotation_polynomial_grad(m: wp.mat33, q: wp.vec4) -> wp.vec4:
    """
    Contract dL/dR with the derivative of the rotation polynomial.

    Writing the rotation matrix of a unit quaternion (w, x, y, z) as
        off-diagonal R_ij = 2 P_ij(q),  diagonal R_ii = 1 - 2 Q_ii(q)
    with
        P01 = xy - zw   P02 = xz + yw   P10 = xy + zw
        P12 = yz - xw   P20 = xz - yw   P21 = yz + xw
        Q00 = y² + z²   Q11 = x² + z²   Q22 = x² + y²
    this returns S_k = Σ m_ij ∂P_ij/∂q_k - Σ m_ii ∂Q_ii/∂q_k for each k.
    S is homogeneous of degree 1 in q.
    """
    w = q[0]
    x = q[1]
    y = q[2]
    z = q[3]

    s_w = -z * m[0, 1] + y * m[0, 2] + z * m[1, 0] - x * m[1, 2] - y * m[2, 0] + x * m[2, 1]
    s_x = (y * m[0, 1] + z * m[0, 2] + y * m[1, 0] - w * m[1, 2] + z * m[2, 0] + w * m[2, 1]
           - 2.0 * x * (m[1, 1] + m[2, 2]))
    s_y = (x * m[0, 1] + w * m[0, 2] + x * m[1, 0] + z * m[1, 2] - w * m[2, 0] + z * m[2, 1]
           - 2.0 * y * (m[0, 0] + m[2, 2]))
    s_z = (-w * m[0, 1] + x * m[0, 2] + w * m[1, 0] + y * m[1, 2] + x * m[2, 0] + y * m[2, 1]
           - 2.0 * z * (m[0, 0] + m[1, 1]))

    return wp.vec4(s_w, s_x, s_y, s_z)


@wp.func
def grad_rotation_matrix_to_quaternion(m: wp.mat33, q: wp.vec4) -> wp.vec4:
    """
    Fused backward of quat_to_rotation_matrix w.r.t. the raw quaternion.

    With s = 1/|q|², every entry of R(q/|q|) is 2 P_ij s or 1 - 2 Q_ii s, so
        dL/dq_k = 2 s S_k(q) - 4 q_k s² A(q)
    where A = Σ_off m_ij P_ij - Σ_diag m_ii Q_ii. The second term is the
    quotient-rule correction for the normalization.
    """
    w = q[0]
    x = q[1]
    y = q[2]
    z = q[3]
    s = 1.0 / (w * w + x * x + y * y + z * z)
    s2 = s * s

    a = (m[0, 1] * (x * y - z * w) + m[0, 2] * (x * z + y * w) +
         m[1, 0] * (x * y + z * w) + m[1, 2] * (y * z - x * w) +
         m[2, 0] * (x * z - y * w) + m[2, 1] * (y * z + x * w) -
         m[0, 0] * (y * y + z * z) - m[1, 1] * (x * x + z * z) - m[2, 2] * (x * x + y * y))

    return 2.0 * s * rotation_polynomial_grad(m, q) - 4.0 * s2 * a * q


@wp.func
def grad_unit_quaternion(m: wp.mat33, n: wp.vec4) -> wp.vec4:
    """Jacobian of the rotation matrix w.r.t. a unit quaternion, applied to m."""
    return 2.0 * rotation_polynomial_grad(m, n)


@wp.func
def grad_quat_normalize(q: wp.vec4, grad_n: wp.vec4) -> wp.vec4:
    """
    Backward of n = q / |q|: dL/dq = (I - n nᵀ) dL/dn / |q|.
    """
    norm = wp.length(q)
    n = q / norm
    return (grad_n - wp.dot(n, grad_n) * n) / norm


# --- Backward Kernels ---
@wp.kernel
def route_distance_gradient(
    n_point: int,
    grad_loss: wp.array(dtype=wp.float32),          # Upstream dL/dloss (1,)
    selections: wp.array(dtype=Selection),          # Recomputed forward selection (N,)
    grad_point_cube_distance: wp.array2d(dtype=wp.float32)  # Zeroed by the caller (N, C)
):
    i = wp.tid()
    grad_point_cube_distance[i, selections[i].index] = grad_loss[0] / float(n_point)


@wp.kernel
def accumulate_cuboid_grads(
    # --- Inputs ---
    scales: wp.array2d(dtype=wp.vec3),          # (B, C)
    orientations: wp.array2d(dtype=wp.vec4),    # (B, C)
    translations: wp.array2d(dtype=wp.vec3),    # (B, C)
    mask: wp.array2d(dtype=wp.int32),           # (B, C)
    points: wp.array2d(dtype=wp.float32),       # (4, N)
    grad_point_cube_distance: wp.array2d(dtype=wp.float32),  # (N, C)
    fused_quat_grad: bool,

    # --- Outputs (Accumulate) ---
    dL_dscale: wp.array2d(dtype=wp.vec3),
    dL_dorientation: wp.array2d(dtype=wp.vec4),
    dL_dtranslation: wp.array2d(dtype=wp.vec3)
):
    i, j = wp.tid()
    b = int(points[3, i])

    if mask[b, j] != 1:
        return

    grad_distance = grad_point_cube_distance[i, j]
    # Only the selected cuboid of each point receives gradient
    if grad_distance == 0.0:
        return

    # --- Recompute forward intermediates ---
    p = wp.vec3(points[0, i], points[1, i], points[2, i])
    offset = p - translations[b, j]
    q = quat_conjugate(orientations[b, j])  # raw, not yet normalized
    R = quat_to_rotation_matrix(q)
    local = mat_vec(R, offset)
    d = wp_vec3_clamp_min(wp_vec3_abs(local) - scales[b, j], 0.0)

    # dL/dd, zero on axes where the point is inside the slab
    gd = 2.0 * grad_distance * d

    # 1. Gradient w.r.t. scale: d = |l| - s on clipped-out axes
    wp.atomic_add(dL_dscale, b, j, -gd)

    # 2. Gradient w.r.t. local coordinates through |l|
    g_local = wp_vec3_mul_element(gd, wp_vec3_sign(local))

    # 3. Gradient w.r.t. orientation: l = R(q̄) · offset
    grad_R = wp.outer(g_local, offset)
    grad_q = wp.vec4(0.0, 0.0, 0.0, 0.0)
    if fused_quat_grad:
        grad_q = grad_rotation_matrix_to_quaternion(grad_R, q)
    else:
        grad_q = grad_quat_normalize(q, grad_unit_quaternion(grad_R, quat_normalize(q)))
    # q̄ -> q flips the vector part of the gradient as well
    wp.atomic_add(dL_dorientation, b, j, quat_conjugate(grad_q))

    # 4. Gradient w.r.t. translation: offset = p - t
    wp.atomic_add(dL_dtranslation, b, j, -mat_t_vec(R, g_local))


def _grad_loss_to_warp(grad_loss, device):
    if isinstance(grad_loss, wp.array):
        return grad_loss
    # Convert torch tensor to numpy if needed
    if hasattr(grad_loss, 'cpu') and hasattr(grad_loss, 'numpy'):
        grad_loss = grad_loss.detach().cpu().numpy()
    return to_warp_array(np.reshape(np.asarray(grad_loss, dtype=np.float32), 1), wp.float32, device=device)


def coverage_select_loss_backward(
    grad_loss,
    scales,
    orientations,
    translations,
    mask,
    points,
    fused_quat_grad=None,
    device=None,
    debug=False,
):
    """
    Backward pass of the coverage select loss.

    The distance matrix and selection are recomputed from the inputs, the
    upstream gradient is routed to the selected (point, cuboid) cells, and
    every routed cell adds its contribution to its cuboid's gradients.

    Args:
        grad_loss: Upstream gradient dL/dloss, float or length-1 array
        scales: Box half-extents (B, C, 3)
        orientations: Quaternions (w, x, y, z) (B, C, 4)
        translations: Box centers (B, C, 3)
        mask: Activity mask (B, C)
        points: Packed points (4, N)
        fused_quat_grad: Closed-form quaternion backprop, defaults to
            CoverageParams.fused_quat_grad
        device: Warp device, defaults to CoverageParams.device
        debug: Whether to log stage information

    Returns:
        dict: Gradients with the shapes of their inputs:
            - dL_dscale: (B, C) vec3
            - dL_dorientation: (B, C) vec4
            - dL_dtranslation: (B, C) vec3
            - dL_ddistance: routed distance gradient (N, C)
    """
    device = device or CoverageParams.device
    if fused_quat_grad is None:
        fused_quat_grad = CoverageParams.fused_quat_grad

    scales, orientations, translations, mask, points = prepare_inputs(
        scales, orientations, translations, mask, points, device
    )
    grad_loss_warp = _grad_loss_to_warp(grad_loss, device)
    n_cube = scales.shape[1]
    n_point = points.shape[1]

    # --- Step 1: Recompute forward intermediates ---
    _, selections = compute_selection(
        scales, orientations, translations, mask, points, device, debug=debug
    )

    # --- Step 2: Route dL/dloss to the selected cells ---
    grad_point_cube_distance = wp.zeros((n_point, n_cube), dtype=WP_FLOAT32, device=device)
    wp.launch(
        kernel=route_distance_gradient,
        dim=n_point,
        inputs=[n_point, grad_loss_warp, selections],
        outputs=[grad_point_cube_distance],
        device=device
    )

    # --- Step 3: Accumulate per-cuboid gradients ---
    dL_dscale = wp.zeros_like(scales)
    dL_dorientation = wp.zeros_like(orientations)
    dL_dtranslation = wp.zeros_like(translations)

    if debug:
        logger.debug("Accumulating cuboid gradients (fused_quat_grad={})", fused_quat_grad)

    wp.launch(
        kernel=accumulate_cuboid_grads,
        dim=(n_point, n_cube),
        inputs=[
            scales,
            orientations,
            translations,
            mask,
            points,
            grad_point_cube_distance,
            fused_quat_grad,
        ],
        outputs=[
            dL_dscale,
            dL_dorientation,
            dL_dtranslation,
        ],
        device=device
    )

    return {
        'dL_dscale': dL_dscale,
        'dL_dorientation': dL_dorientation,
        'dL_dtranslation': dL_dtranslation,
        'dL_ddistance': grad_point_cube_distance,
    }
