"""
Cuboid Coverage Loss - Forward Pipeline

Mathematical Foundation:
Each cuboid primitive C_k is defined by parameters (s_k, q_k, t_k):
- s_k ∈ ℝ³: half-extents of the box along its local axes
- q_k ∈ ℝ⁴: orientation quaternion (w, x, y, z), normalized before every use
- t_k ∈ ℝ³: position of the box center

A point p is expressed in the frame of C_k as
    l = R(q̄_k) · (p - t_k)
where q̄_k is the conjugate (inverse rotation) of q_k. The box distance is
    D(p, C_k) = Σ_axis max(|l_axis| - s_k,axis, 0)²
which is the squared distance to the box surface, 0 for points inside.

Pipeline (one launch per stage, launches on a device run in order):
1. DISTANCE: D(p_i, C_k) for every (point, cuboid) pair → fill_point_cube_distance()
   Inactive cuboids get the FLT_MAX sentinel.
2. SELECTION: per point, the cuboid with the smallest distance → select_nearest_cube()
   Strict '<' scan, so ties go to the lowest slot index.
3. REDUCTION: loss = (1/N) Σ_i D(p_i, C_sel(i)) → reduce_coverage_loss()
   Accumulated with atomics, so the summation order is not deterministic.

Points from every batch element share one [4, N] buffer; row 3 tells which
batch element's cuboids a point is compared against.
"""

import warp as wp
from loguru import logger

from config import *
from structures import Selection
from utils.wp_utils import (
    to_warp_array,
    wp_vec3_abs,
    wp_vec3_clamp_min,
    quat_conjugate,
    quat_to_rotation_matrix,
    mat_vec,
)


@wp.func
def box_distance(p: wp.vec3, scale: wp.vec3, orientation: wp.vec4, translation: wp.vec3) -> float:
    """
    Squared distance from world point p to the surface of an oriented box.

    The conjugated orientation maps world to local coordinates; the overshoot
    past the half-extent is clipped at zero on each axis.
    """
    R = quat_to_rotation_matrix(quat_conjugate(orientation))
    local = mat_vec(R, p - translation)
    d = wp_vec3_clamp_min(wp_vec3_abs(local) - scale, 0.0)
    return wp.dot(d, d)


# --- Forward Kernels ---
@wp.kernel
def fill_point_cube_distance(
    # --- Inputs ---
    scales: wp.array2d(dtype=wp.vec3),          # Box half-extents (B, C)
    orientations: wp.array2d(dtype=wp.vec4),    # Quaternions (w, x, y, z) (B, C)
    translations: wp.array2d(dtype=wp.vec3),    # Box centers (B, C)
    mask: wp.array2d(dtype=wp.int32),           # 1 = active slot (B, C)
    points: wp.array2d(dtype=wp.float32),       # x, y, z, batch index rows (4, N)

    # --- Outputs ---
    point_cube_distance: wp.array2d(dtype=wp.float32)  # (N, C)
):
    i, j = wp.tid()
    b = int(points[3, i])

    if mask[b, j] == 1:
        p = wp.vec3(points[0, i], points[1, i], points[2, i])
        point_cube_distance[i, j] = box_distance(p, scales[b, j], orientations[b, j], translations[b, j])
    else:
        point_cube_distance[i, j] = FLT_MAX


@wp.kernel
def select_nearest_cube(
    point_cube_distance: wp.array2d(dtype=wp.float32),  # (N, C)
    selections: wp.array(dtype=Selection)               # (N,)
):
    i = wp.tid()

    min_val = point_cube_distance[i, 0]
    min_idx = int(0)
    for j in range(1, point_cube_distance.shape[1]):
        d = point_cube_distance[i, j]
        if d < min_val:
            min_val = d
            min_idx = j

    sel = Selection()
    sel.index = min_idx
    sel.distance = min_val
    selections[i] = sel


@wp.kernel
def reduce_coverage_loss(
    n_point: int,
    selections: wp.array(dtype=Selection),
    loss: wp.array(dtype=wp.float32)     # Single accumulator, zeroed by the caller
):
    i = wp.tid()
    wp.atomic_add(loss, 0, selections[i].distance / float(n_point))


def prepare_inputs(scales, orientations, translations, mask, points, device):
    """Convert the five loss inputs to warp arrays on the target device."""
    return (
        to_warp_array(scales, WP_VEC3, device=device),
        to_warp_array(orientations, WP_VEC4, device=device),
        to_warp_array(translations, WP_VEC3, device=device),
        to_warp_array(mask, WP_INT, device=device),
        to_warp_array(points, WP_FLOAT32, device=device),
    )


def compute_selection(scales, orientations, translations, mask, points, device, debug=False):
    """
    Run the distance and selection stages.

    Shared by the forward pass and by the backward pass, which recomputes
    these intermediates instead of caching them.

    Returns:
        Tuple of (point_cube_distance (N, C), selections (N,))
    """
    n_cube = scales.shape[1]
    n_point = points.shape[1]

    point_cube_distance = wp.zeros((n_point, n_cube), dtype=WP_FLOAT32, device=device)
    selections = wp.zeros(n_point, dtype=Selection, device=device)

    if debug:
        logger.debug("Filling point-cube distance: {} points x {} cubes on {}", n_point, n_cube, device)

    wp.launch(
        kernel=fill_point_cube_distance,
        dim=(n_point, n_cube),
        inputs=[
            scales,
            orientations,
            translations,
            mask,
            points,
        ],
        outputs=[
            point_cube_distance,
        ],
        device=device
    )

    wp.launch(
        kernel=select_nearest_cube,
        dim=n_point,
        inputs=[point_cube_distance],
        outputs=[selections],
        device=device
    )

    return point_cube_distance, selections


def coverage_select_loss(
    scales,
    orientations,
    translations,
    mask,
    points,
    device=None,
    debug=False,
):
    """Mean nearest-cuboid box distance of a batch of point clouds.

    Args:
        scales: Box half-extents of shape (B, C, 3)
        orientations: Quaternions (w, x, y, z) of shape (B, C, 4)
        translations: Box centers of shape (B, C, 3)
        mask: Activity mask of shape (B, C), 1 for active slots
        points: Packed points of shape (4, N): x, y, z, batch index
        device: Warp device, defaults to CoverageParams.device
        debug: Whether to log stage information

    Returns:
        Tuple of (loss, intermediate_buffers) where loss is a warp array of
        length 1.
    """
    device = device or CoverageParams.device
    scales, orientations, translations, mask, points = prepare_inputs(
        scales, orientations, translations, mask, points, device
    )
    n_point = points.shape[1]

    point_cube_distance, selections = compute_selection(
        scales, orientations, translations, mask, points, device, debug=debug
    )

    loss = wp.zeros(1, dtype=WP_FLOAT32, device=device)
    wp.launch(
        kernel=reduce_coverage_loss,
        dim=n_point,
        inputs=[n_point, selections],
        outputs=[loss],
        device=device
    )

    if debug:
        logger.debug("Coverage loss reduced over {} points", n_point)

    return loss, {
        "point_cube_distance": point_cube_distance,
        "selections": selections,
    }
