import numpy as np

# Host-side quaternion helpers. Quaternions are (w, x, y, z), matching the
# layout of the orientation buffers consumed by the kernels.

def normalize_quaternion(q):
    q = np.asarray(q, dtype=np.float64)
    return q / np.linalg.norm(q, axis=-1, keepdims=True)

def conjugate_quaternion(q):
    q = np.array(q, dtype=np.float64)
    q[..., 1:] = -q[..., 1:]
    return q

def quaternion_to_matrix(q):
    """
    Convert a (possibly un-normalized) quaternion (w, x, y, z) to a 3x3
    rotation matrix. Batched inputs of shape (..., 4) give (..., 3, 3).
    """
    w, x, y, z = np.moveaxis(normalize_quaternion(q), -1, 0)
    R = np.stack([
        1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - z * w), 2.0 * (x * z + y * w),
        2.0 * (x * y + z * w), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - x * w),
        2.0 * (x * z - y * w), 2.0 * (y * z + x * w), 1.0 - 2.0 * (x * x + y * y),
    ], axis=-1)
    return R.reshape(R.shape[:-1] + (3, 3))

def quaternion_multiply(a, b):
    """Hamilton product a * b of two (w, x, y, z) quaternions."""
    aw, ax, ay, az = a
    bw, bx, by, bz = b
    return np.array([
        aw * bw - ax * bx - ay * by - az * bz,
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
    ], dtype=np.float64)

def random_quaternion(rng, size=None):
    """Uniformly distributed unit quaternions (w, x, y, z)."""
    shape = (4,) if size is None else tuple(np.atleast_1d(size)) + (4,)
    q = rng.normal(size=shape)
    return normalize_quaternion(q)
