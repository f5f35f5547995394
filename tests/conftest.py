# tests/conftest.py
# Ensure project root is importable as a module during pytest runs
import pathlib
import sys

import numpy as np
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from svmgate.config import HyperparamRange, RunConfig, TrainingConfig  # noqa: E402
from svmgate.features import LabelledSet  # noqa: E402


@pytest.fixture
def separable():
    """120/120 examples in 3 dims; feature 0 mostly separates the classes, the rest is noise."""
    rng = np.random.default_rng(7)
    neg = rng.normal(0.0, 1.0, size=(120, 3))
    pos = rng.normal(0.0, 1.0, size=(120, 3))
    neg[:, 0] -= 1.5
    pos[:, 0] += 1.5
    return LabelledSet(neg=neg, pos=pos)


@pytest.fixture
def small_run_config(tmp_path):
    training = TrainingConfig(
        feature_selection="backward",
        k_folds=3,
        n_jobs=1,
        nu=HyperparamRange(0.05, 0.4, 2),
        loggamma=HyperparamRange(-2.0, 0.0, 2),
    )
    return RunConfig(out_dir=str(tmp_path / "out"), label="demo", progress=False, training=training)
