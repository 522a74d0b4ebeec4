"""
Configuration settings and constants for the cuboid coverage loss.
"""
import os

import warp as wp
import yaml
from loguru import logger

# Warp data types and constants (keep capitalized as they are types)
WP_FLOAT32 = wp.float32
WP_INT = wp.int32
WP_VEC3 = wp.vec3
WP_VEC4 = wp.vec4

# Sentinel distance for inactive cuboids, same value as C's FLT_MAX
FLT_MAX = wp.constant(3.402823466e+38)

# DEVICE = "cpu" # Use "cpu" or "cuda"
DEVICE = "cuda" if wp.is_cuda_available() else "cpu"


class CoverageParams:
    """Parameters for the coverage select loss."""

    # === EXECUTION ===
    device = DEVICE          # Warp device the kernels are launched on
    verbose = False          # Log per-stage launch information

    # === BACKWARD ===
    fused_quat_grad = True   # Closed-form quaternion backprop (False = composed Jacobians)

    @classmethod
    def update(cls, **kwargs):
        """Update parameters with new values."""
        for key, value in kwargs.items():
            if key in cls.get_config_dict():
                setattr(cls, key, value)
            else:
                raise ValueError(f"Unknown parameter: {key}")

    @classmethod
    def get_config_dict(cls):
        """Get parameters as a dictionary."""
        return {
            'device': cls.device,
            'verbose': cls.verbose,
            'fused_quat_grad': cls.fused_quat_grad,
        }


def load_config(config_path):
    """Load a YAML config file and apply it to CoverageParams."""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"No config file found at {config_path}")

    with open(config_path) as f:
        params = yaml.load(f, Loader=yaml.FullLoader) or {}

    CoverageParams.update(**params)
    logger.info("Loaded coverage config from {}: {}", config_path, CoverageParams.get_config_dict())
    return CoverageParams.get_config_dict()
