import numpy as np
import warp as wp
from config import DEVICE


@wp.func
def wp_vec3_mul_element(a: wp.vec3, b: wp.vec3) -> wp.vec3:
    return wp.vec3(a[0] * b[0], a[1] * b[1], a[2] * b[2])

@wp.func
def wp_vec3_abs(a: wp.vec3) -> wp.vec3:
    return wp.vec3(wp.abs(a[0]), wp.abs(a[1]), wp.abs(a[2]))

@wp.func
def wp_vec3_sign(a: wp.vec3) -> wp.vec3:
    # sign(0) is +1
    return wp.vec3(wp.sign(a[0]), wp.sign(a[1]), wp.sign(a[2]))

@wp.func
def wp_vec3_clamp_min(x: wp.vec3, min_val: float) -> wp.vec3:
    # NaN components stay NaN, wp.max would turn them into min_val
    return wp.vec3(
        wp.where(x[0] < min_val, min_val, x[0]),
        wp.where(x[1] < min_val, min_val, x[1]),
        wp.where(x[2] < min_val, min_val, x[2])
    )

# --- Quaternion / rotation helpers ---
# Quaternions are stored as wp.vec4 in (w, x, y, z) order.

@wp.func
def quat_normalize(q: wp.vec4) -> wp.vec4:
    # No epsilon: a zero quaternion yields NaN on purpose
    norm = wp.sqrt(q[0] * q[0] + q[1] * q[1] + q[2] * q[2] + q[3] * q[3])
    return wp.vec4(q[0] / norm, q[1] / norm, q[2] / norm, q[3] / norm)

@wp.func
def quat_conjugate(q: wp.vec4) -> wp.vec4:
    return wp.vec4(q[0], -q[1], -q[2], -q[3])

@wp.func
def quat_to_rotation_matrix(q: wp.vec4) -> wp.mat33:
    n = quat_normalize(q)
    w = n[0]
    x = n[1]
    y = n[2]
    z = n[3]
    return wp.mat33(
        1.0 - 2.0 * y * y - 2.0 * z * z, 2.0 * x * y - 2.0 * z * w, 2.0 * x * z + 2.0 * y * w,
        2.0 * x * y + 2.0 * z * w, 1.0 - 2.0 * x * x - 2.0 * z * z, 2.0 * y * z - 2.0 * x * w,
        2.0 * x * z - 2.0 * y * w, 2.0 * y * z + 2.0 * x * w, 1.0 - 2.0 * x * x - 2.0 * y * y
    )

@wp.func
def mat_vec(m: wp.mat33, v: wp.vec3) -> wp.vec3:
    return wp.vec3(
        m[0, 0] * v[0] + m[0, 1] * v[1] + m[0, 2] * v[2],
        m[1, 0] * v[0] + m[1, 1] * v[1] + m[1, 2] * v[2],
        m[2, 0] * v[0] + m[2, 1] * v[1] + m[2, 2] * v[2]
    )

@wp.func
def mat_t_vec(m: wp.mat33, v: wp.vec3) -> wp.vec3:
    # R is orthogonal, so R^T v is the inverse rotation
    return wp.vec3(
        m[0, 0] * v[0] + m[1, 0] * v[1] + m[2, 0] * v[2],
        m[0, 1] * v[0] + m[1, 1] * v[1] + m[2, 1] * v[2],
        m[0, 2] * v[0] + m[1, 2] * v[1] + m[2, 2] * v[2]
    )


def to_warp_array(data, dtype, device=None):
    """Convert numpy arrays, torch tensors or nested lists to a warp array.

    Vector dtypes consume the trailing axis, so a ``[B, C, 3]`` float array
    with ``dtype=wp.vec3`` becomes a ``[B, C]`` array of vec3.
    """
    if isinstance(data, wp.array):
        return data
    if data is None:
        return None
    # Convert torch tensor to numpy if needed
    if hasattr(data, 'cpu') and hasattr(data, 'numpy'):
        data = data.detach().cpu().numpy()
    scalar_type = getattr(dtype, '_wp_scalar_type_', dtype)
    np_dtype = wp.dtype_to_numpy(scalar_type)
    data = np.ascontiguousarray(data, dtype=np_dtype)
    return wp.array(data, dtype=dtype, device=device or DEVICE)
