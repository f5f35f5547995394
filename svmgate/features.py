from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, TextIO, Union

import numpy as np

from .errors import ConfigError, NumericalError


def _log(msg: str) -> None:
    print(msg, flush=True)


# ------------------------ feature providers ------------------------


class FeatureProvider(ABC):
    """Capability interface: per-index values of a fixed-length feature."""

    @abstractmethod
    def value(self, index: int) -> float:
        raise NotImplementedError

    @abstractmethod
    def dimension(self) -> int:
        raise NotImplementedError

    def entire_feature(self) -> np.ndarray:
        return np.array([self.value(i) for i in range(self.dimension())], dtype=float)


class LazyFeature(FeatureProvider):
    """
    Computes each index at most once through ``compute`` and caches it.
    Only the indices a caller touches are ever computed.
    """

    def __init__(self, compute: Callable[[int], float], dim: int):
        if dim <= 0:
            raise ConfigError(f"feature dimension must be > 0, got {dim}")
        self._compute = compute
        self._values = np.zeros(dim, dtype=float)
        self._known = np.zeros(dim, dtype=bool)

    def value(self, index: int) -> float:
        if not self._known[index]:
            v = float(self._compute(index))
            if not np.isfinite(v):
                raise NumericalError(f"feature value {index} is not finite: {v}")
            self._values[index] = v
            self._known[index] = True
        return float(self._values[index])

    def dimension(self) -> int:
        return int(self._values.shape[0])


class VectorFeature(FeatureProvider):
    def __init__(self, values: Sequence[float]):
        arr = np.asarray(values, dtype=float).ravel()
        if arr.size == 0:
            raise ConfigError("empty feature vector")
        if not np.isfinite(arr).all():
            raise NumericalError("feature vector has non-finite values")
        self._values = arr

    def value(self, index: int) -> float:
        return float(self._values[index])

    def dimension(self) -> int:
        return int(self._values.shape[0])

    def entire_feature(self) -> np.ndarray:
        return self._values.copy()


FeatureLike = Union[FeatureProvider, Sequence[float], np.ndarray]


def as_provider(feature: FeatureLike) -> FeatureProvider:
    if isinstance(feature, FeatureProvider):
        return feature
    return VectorFeature(feature)


# ------------------------ labelled examples ------------------------


@dataclass(frozen=True)
class LabelledSet:
    """Negative and positive examples, one row per example."""
    neg: np.ndarray
    pos: np.ndarray

    @classmethod
    def from_lists(cls, neg: Sequence[Sequence[float]], pos: Sequence[Sequence[float]], dim: int | None = None) -> "LabelledSet":
        def _mat(rows):
            if len(rows) == 0:
                return np.zeros((0, dim or 0), dtype=float)
            return np.asarray(rows, dtype=float)

        neg_m, pos_m = _mat(neg), _mat(pos)
        if neg_m.size and pos_m.size and neg_m.shape[1] != pos_m.shape[1]:
            raise ConfigError(f"label sets disagree on dimension: {neg_m.shape[1]} vs {pos_m.shape[1]}")
        return cls(neg=neg_m, pos=pos_m)

    @property
    def n_neg(self) -> int:
        return int(self.neg.shape[0])

    @property
    def n_pos(self) -> int:
        return int(self.pos.shape[0])

    @property
    def dims(self) -> int:
        if self.n_neg:
            return int(self.neg.shape[1])
        return int(self.pos.shape[1])

    def by_label(self, label: bool) -> np.ndarray:
        return self.pos if label else self.neg

    def filter(self, keep_neg: np.ndarray, keep_pos: np.ndarray) -> "LabelledSet":
        return LabelledSet(neg=self.neg[keep_neg], pos=self.pos[keep_pos])


class ExampleStore:
    """
    Append-only training store shared by feature producers.
    ``add_example`` is the only way in; everything else reads a snapshot.
    The dump file, when given, stays open until ``close``.
    """

    def __init__(self, dump_path: Optional[Path] = None):
        self._lock = threading.Lock()
        self._rows: Dict[bool, List[np.ndarray]] = {False: [], True: []}
        self._dim: Optional[int] = None
        self._dump: Optional[TextIO] = None
        if dump_path is not None:
            dump_path.parent.mkdir(parents=True, exist_ok=True)
            self._dump = open(dump_path, "w", encoding="utf-8", buffering=1)

    def add_example(self, vector: Sequence[float], label: bool) -> None:
        row = np.asarray(vector, dtype=float).ravel()
        if not np.isfinite(row).all():
            raise NumericalError("training example has non-finite values")
        with self._lock:
            if self._dim is None:
                self._dim = int(row.size)
            elif row.size != self._dim:
                raise ConfigError(f"example has {row.size} dims, expected {self._dim}")
            self._rows[bool(label)].append(row)
            if self._dump is not None:
                self._dump.write(f"{int(bool(label))}\t" + "\t".join(f"{v:.9g}" for v in row) + "\t\n")

    def counts(self) -> tuple[int, int]:
        with self._lock:
            return len(self._rows[False]), len(self._rows[True])

    def snapshot(self) -> LabelledSet:
        with self._lock:
            return LabelledSet.from_lists(self._rows[False], self._rows[True], dim=self._dim)

    def close(self) -> None:
        with self._lock:
            if self._dump is not None:
                self._dump.close()
                self._dump = None

    def __enter__(self) -> "ExampleStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ------------------------ subset selection / normalisation ------------------------


class FeatureSubsetSelector:
    """
    Ordered feature subset plus per-index centring/scaling.

    Coefficients are estimated once on the whole (cascade-filtered) feature
    space; ``set_subset`` only changes which indices are projected.
    """

    def __init__(self, subset: Sequence[int] = (), mean: Optional[Sequence[float]] = None,
                 scale: Optional[Sequence[float]] = None):
        self._subset: tuple[int, ...] = ()
        self.mean = None if mean is None else np.asarray(mean, dtype=float)
        self.scale = None if scale is None else np.asarray(scale, dtype=float)
        if subset:
            self.set_subset(subset)

    @property
    def subset(self) -> tuple[int, ...]:
        return self._subset

    def set_subset(self, indices: Sequence[int]) -> None:
        subset = tuple(int(i) for i in indices)
        if len(set(subset)) != len(subset):
            raise ConfigError(f"duplicate indices in feature subset {subset}")
        if any(i < 0 for i in subset):
            raise ConfigError(f"negative index in feature subset {subset}")
        self._subset = subset

    def find_normalizing_coefficients(self, labelled: LabelledSet) -> None:
        allx = np.vstack([labelled.neg, labelled.pos])
        if allx.shape[0] == 0:
            raise ConfigError("no examples to normalise")
        mean = allx.mean(axis=0)
        sd = allx.std(axis=0)
        scale = np.where(sd > 0, 1.0 / np.where(sd > 0, sd, 1.0), 1.0)
        bad = ~np.isfinite(scale) | (scale == 0)
        if bad.any():
            raise NumericalError(f"bad normalising scale for features {np.flatnonzero(bad).tolist()}")
        self.mean = mean
        self.scale = scale
        _log(f"[features] normalisingMean={np.round(mean, 6).tolist()}")
        _log(f"[features] normalisingScale={np.round(scale, 6).tolist()}")

    def _check(self) -> np.ndarray:
        if not self._subset:
            raise ConfigError("Empty feature subset")
        if self.mean is None or self.scale is None:
            raise ConfigError("normalising coefficients not estimated")
        idx = np.asarray(self._subset, dtype=int)
        if idx.max() >= self.mean.shape[0] or idx.max() >= self.scale.shape[0]:
            raise ConfigError(f"feature subset {self._subset} exceeds {self.mean.shape[0]} coefficients")
        return idx

    def select_and_normalize(self, feature: FeatureLike) -> np.ndarray:
        idx = self._check()
        if isinstance(feature, FeatureProvider):
            vals = np.array([feature.value(int(i)) for i in idx], dtype=float)
        else:
            vals = np.asarray(feature, dtype=float).ravel()[idx]
        return (vals - self.mean[idx]) * self.scale[idx]

    def select_and_normalize_rows(self, X: np.ndarray) -> np.ndarray:
        idx = self._check()
        X = np.asarray(X, dtype=float)
        if X.shape[0] == 0:
            return np.zeros((0, idx.size), dtype=float)
        return (X[:, idx] - self.mean[idx]) * self.scale[idx]

    def to_dict(self) -> dict:
        return {
            "feature_subset": list(self._subset),
            "normalizing_mean": [] if self.mean is None else [float(v) for v in self.mean],
            "normalizing_scale": [] if self.scale is None else [float(v) for v in self.scale],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "FeatureSubsetSelector":
        try:
            subset = [int(i) for i in d.get("feature_subset", [])]
            mean = d.get("normalizing_mean") or None
            scale = d.get("normalizing_scale") or None
        except (TypeError, ValueError) as e:
            raise ConfigError(f"malformed feature subset state: {e}") from e
        return cls(subset, mean, scale)
