from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Tuple

import numpy as np

from . import engine
from .errors import ConfigError
from .features import FeatureSubsetSelector, LabelledSet
from .scoring import ClassWeights, total_success_rate


def _log(msg: str) -> None:
    print(msg, flush=True)


@dataclass(frozen=True)
class Hyperparameterisation:
    nu: float
    gamma: float
    cv_score: float = -1.0
    num_svs: float = -1.0

    @property
    def kernel(self) -> str:
        return "rbf" if self.gamma > 0 else "linear"

    @property
    def loggamma(self) -> float:
        return float(np.log(self.gamma)) if self.gamma > 0 else -20.0

    def scored(self, cv_score: float, num_svs: float) -> "Hyperparameterisation":
        return replace(self, cv_score=float(cv_score), num_svs=float(num_svs))

    def to_string(self) -> str:
        return f"Nu={self.nu:g}Gamma={self.gamma:g}"


def _stack(labelled: LabelledSet) -> Tuple[np.ndarray, np.ndarray]:
    X = np.vstack([labelled.neg, labelled.pos])
    y = np.concatenate([np.zeros(labelled.n_neg, dtype=bool), np.ones(labelled.n_pos, dtype=bool)])
    return X, y


class TrainValidateSplit:
    """One fold: per-class block ``[i*n//k, (i+1)*n//k)`` validates, the rest trains."""

    def __init__(self, labelled: LabelledSet, fold: int, k: int, weights: ClassWeights):
        self.fold = fold
        self.weights = weights
        parts = {"train": ([], []), "validate": ([], [])}
        self.validate_index = {}
        for label in (False, True):
            rows = labelled.by_label(label)
            n = rows.shape[0]
            start, end = (n * fold) // k, (n * (fold + 1)) // k
            in_val = np.zeros(n, dtype=bool)
            in_val[start:end] = True
            self.validate_index[label] = np.flatnonzero(in_val)
            parts["validate"][0].append(rows[in_val])
            parts["validate"][1].append(np.full(int(in_val.sum()), label, dtype=bool))
            parts["train"][0].append(rows[~in_val])
            parts["train"][1].append(np.full(int((~in_val).sum()), label, dtype=bool))

        self.X_train = np.vstack(parts["train"][0])
        self.y_train = np.concatenate(parts["train"][1])
        self.X_val = np.vstack(parts["validate"][0])
        self.y_val = np.concatenate(parts["validate"][1])
        if self.X_train.shape[0] == 0 or self.X_val.shape[0] == 0:
            raise ConfigError(f"fold {fold}/{k}: empty train or validation partition")

    @property
    def dims(self) -> int:
        return int(self.X_train.shape[1])

    def train_and_validate(self, point: Hyperparameterisation) -> Tuple[float, int]:
        try:
            model = engine.train(self.X_train, self.y_train, point.nu, point.gamma,
                                 self.weights.engine_class_weight())
            raw = engine.predict_raw(model, self.X_val)
        except Exception as e:
            _log(f"[cv] engine failure fold={self.fold} {point.to_string()}: {type(e).__name__}: {e}")
            return 0.0, 0
        rate, _ = total_success_rate(self.y_val, raw, self.weights)
        return rate, engine.support_count(model)


class KFoldTrainValidate:
    """
    Selected, normalised view of the training set split into ``k`` folds.
    The projection happens once here; folds and the final refit share it.
    """

    def __init__(self, labelled: LabelledSet, selector: FeatureSubsetSelector, k: int,
                 weights: ClassWeights, feature_penalty: float = 0.003, verbose: bool = True):
        if k < 2:
            raise ConfigError(f"k-fold needs k >= 2, got {k}")
        self.subset = selector.subset
        self.weights = weights
        self.feature_penalty = float(feature_penalty)
        self.projected = LabelledSet(
            neg=selector.select_and_normalize_rows(labelled.neg),
            pos=selector.select_and_normalize_rows(labelled.pos),
        )
        if verbose:
            self._describe()
        self.folds: List[TrainValidateSplit] = [
            TrainValidateSplit(self.projected, i, k, weights) for i in range(k)
        ]

    def _describe(self) -> None:
        for label, name in ((False, "Negative"), (True, "Positive")):
            rows = self.projected.by_label(label)
            if rows.shape[0] == 0:
                continue
            _log(f"[cv] {name}: Mean={np.round(rows.mean(axis=0), 4).tolist()} SD={np.round(rows.std(axis=0), 4).tolist()}")
            if rows.shape[0] > 1:
                dup = np.abs((rows[1:] - rows[0]).mean(axis=1)) < 1e-8
                if dup.any():
                    _log(f"[cv] warning: {int(dup.sum())} duplicate {name.lower()} training vectors (this is usually ok)")

    @property
    def k(self) -> int:
        return len(self.folds)

    @property
    def dims(self) -> int:
        return len(self.subset)

    def fold_scores(self, point: Hyperparameterisation) -> List[Tuple[float, int]]:
        return [fold.train_and_validate(point) for fold in self.folds]

    def train_and_validate(self, point: Hyperparameterisation) -> Hyperparameterisation:
        scores = self.fold_scores(point)
        mean_score = float(np.mean([s for s, _ in scores]))
        mean_svs = float(np.mean([n for _, n in scores]))
        return point.scored(mean_score - self.feature_penalty * self.dims, mean_svs)

    def all_data(self) -> Tuple[np.ndarray, np.ndarray]:
        return _stack(self.projected)

    def train_on_all(self, point: Hyperparameterisation):
        X, y = self.all_data()
        model = engine.train(X, y, point.nu, point.gamma, self.weights.engine_class_weight())
        return model, X, y
