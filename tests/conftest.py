import sys
from pathlib import Path

import numpy as np
import pytest
import warp as wp

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

wp.init()

from config import CoverageParams  # noqa: E402


@pytest.fixture(autouse=True)
def restore_params():
    saved = CoverageParams.get_config_dict()
    yield
    CoverageParams.update(**saved)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
