from __future__ import annotations

import warnings
from pathlib import Path
from typing import Dict

import joblib
import numpy as np
from sklearn.exceptions import ConvergenceWarning
from sklearn.svm import NuSVC


def labels_to_signed(labels: np.ndarray) -> np.ndarray:
    return np.where(np.asarray(labels, dtype=bool), 1, -1)


def train(X: np.ndarray, labels: np.ndarray, nu: float, gamma: float,
          class_weight: Dict[int, float] | None = None) -> NuSVC:
    """
    Fit a nu-SVM. gamma <= 0 selects the linear kernel, anything else RBF.
    Raises whatever sklearn raises (e.g. infeasible nu); callers decide.
    """
    kernel = "rbf" if gamma > 0 else "linear"
    params = {"nu": float(nu), "kernel": kernel, "class_weight": class_weight, "cache_size": 200}
    if kernel == "rbf":
        params["gamma"] = float(gamma)
    model = NuSVC(**params)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=ConvergenceWarning)
        model.fit(np.asarray(X, dtype=float), labels_to_signed(labels))
    return model


def predict_raw(model: NuSVC, X: np.ndarray) -> np.ndarray:
    """Signed distance to the separating surface, positive towards label 1."""
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X.reshape(1, -1)
    if X.shape[0] == 0:
        return np.zeros(0, dtype=float)
    return np.asarray(model.decision_function(X), dtype=float).ravel()


def support_count(model: NuSVC) -> int:
    return int(np.sum(model.n_support_))


def serialize(model: NuSVC, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(model, path)


def deserialize(path: Path) -> NuSVC:
    return joblib.load(path)
