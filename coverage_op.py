"""
Operation layer for the coverage select loss.

Checks input shapes before anything reaches the kernels and binds the
forward/backward pair as a torch autograd function, so the loss can be
used as a term of a torch training objective.
"""
import numpy as np
import torch
import warp as wp
from loguru import logger

from config import CoverageParams
from forward import coverage_select_loss as coverage_select_loss_forward
from backward import coverage_select_loss_backward


def _host_shape(data):
    # warp vector arrays carry their trailing axis in the dtype
    if isinstance(data, wp.array):
        length = getattr(data.dtype, '_length_', None)
        return tuple(data.shape) + ((length,) if length else ())
    return tuple(np.shape(data))


def _to_numpy(data):
    if isinstance(data, wp.array):
        return data.numpy()
    if hasattr(data, 'cpu') and hasattr(data, 'numpy'):
        return data.detach().cpu().numpy()
    return np.asarray(data)


def check_coverage_inputs(scales, orientations, translations, mask, points):
    """
    Validate the shapes of the loss inputs.

    Returns:
        Tuple of (batch_size, n_cube, n_point)

    Raises:
        ValueError: If any input does not match the expected layout or a
            batch index is out of range.
    """
    scale_shape = _host_shape(scales)
    if len(scale_shape) != 3 or scale_shape[2] != 3:
        raise ValueError(f"scales must have shape (batch, n_cube, 3), got {scale_shape}")
    batch_size, n_cube = scale_shape[0], scale_shape[1]

    expected = [
        ('orientations', orientations, (batch_size, n_cube, 4)),
        ('translations', translations, (batch_size, n_cube, 3)),
        ('mask', mask, (batch_size, n_cube)),
    ]
    for name, value, shape in expected:
        if _host_shape(value) != shape:
            raise ValueError(f"{name} must have shape {shape}, got {_host_shape(value)}")

    point_shape = _host_shape(points)
    if len(point_shape) != 2 or point_shape[0] != 4:
        raise ValueError(f"points must have shape (4, n_point), got {point_shape}")
    n_point = point_shape[1]

    if n_point > 0:
        batch_index = _to_numpy(points)[3].astype(np.int64)
        if batch_index.min() < 0 or batch_index.max() >= batch_size:
            raise ValueError(
                f"point batch indices must lie in [0, {batch_size}), "
                f"got range [{batch_index.min()}, {batch_index.max()}]"
            )

    active = _to_numpy(mask) == 1
    for b in np.flatnonzero(~active.any(axis=1)):
        logger.warning("Batch element {} has no active cuboid; its points will poison the loss", b)

    return batch_size, n_cube, n_point


class CoverageSelectLoss(torch.autograd.Function):
    """torch autograd binding of the warp forward/backward kernels."""

    @staticmethod
    def forward(ctx, scales, orientations, translations, mask, points):
        loss, _ = coverage_select_loss_forward(
            scales, orientations, translations, mask, points,
            device=CoverageParams.device,
            debug=CoverageParams.verbose,
        )
        ctx.save_for_backward(scales, orientations, translations, mask, points)
        return wp.to_torch(loss).reshape(()).to(device=scales.device, dtype=scales.dtype)

    @staticmethod
    def backward(ctx, grad_output):
        scales, orientations, translations, mask, points = ctx.saved_tensors
        grads = coverage_select_loss_backward(
            grad_output,
            scales, orientations, translations, mask, points,
            fused_quat_grad=CoverageParams.fused_quat_grad,
            device=CoverageParams.device,
            debug=CoverageParams.verbose,
        )

        def to_input(grad, like):
            return wp.to_torch(grad).to(device=like.device, dtype=like.dtype)

        return (
            to_input(grads['dL_dscale'], scales),
            to_input(grads['dL_dorientation'], orientations),
            to_input(grads['dL_dtranslation'], translations),
            None,
            None,
        )


def coverage_select_loss(scales, orientations, translations, mask, points):
    """Check the inputs and evaluate the differentiable coverage loss.

    Args:
        scales: (B, C, 3) float tensor
        orientations: (B, C, 4) float tensor, quaternions (w, x, y, z)
        translations: (B, C, 3) float tensor
        mask: (B, C) int tensor, 1 for active cuboids
        points: (4, N) float tensor of x, y, z, batch index

    Returns:
        0-d tensor holding the mean nearest-cuboid distance
    """
    check_coverage_inputs(scales, orientations, translations, mask, points)
    return CoverageSelectLoss.apply(scales, orientations, translations, mask, points)
