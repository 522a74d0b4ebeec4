import os

import numpy as np
from plyfile import PlyData, PlyElement


def pack_points(point_clouds):
    """Pack per-batch point clouds into the [4, n_point] layout of the loss.

    Rows 0-2 hold x, y, z and row 3 holds the batch index (as float) of the
    cloud each point came from.

    Args:
        point_clouds: Sequence of (n_i, 3) arrays, one per batch element

    Returns:
        float32 array of shape (4, sum(n_i))
    """
    columns = []
    for batch_index, cloud in enumerate(point_clouds):
        cloud = np.asarray(cloud, dtype=np.float32).reshape(-1, 3)
        batch_row = np.full((cloud.shape[0], 1), batch_index, dtype=np.float32)
        columns.append(np.concatenate([cloud, batch_row], axis=1))
    if not columns:
        return np.zeros((4, 0), dtype=np.float32)
    return np.ascontiguousarray(np.concatenate(columns, axis=0).T)


def load_ply_points(filename):
    """
    Load x, y, z of the vertex element of a PLY file.

    Returns:
        float32 array of shape (n, 3)
    """
    plydata = PlyData.read(filename)
    verts = plydata['vertex'].data
    return np.stack([verts['x'], verts['y'], verts['z']], axis=-1).astype(np.float32)


def save_ply_points(points, filepath):
    points = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    vertex_type = [('x', 'f4'), ('y', 'f4'), ('z', 'f4')]
    vertex_array = np.array([tuple(p) for p in points], dtype=vertex_type)
    el = PlyElement.describe(vertex_array, 'vertex')

    # Create directory if it doesn't exist
    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)

    PlyData([el], text=False).write(filepath)
