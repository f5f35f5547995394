from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import BoostingConfig
from .errors import NumericalError
from .features import FeatureLike, FeatureProvider, LabelledSet


def _log(msg: str) -> None:
    print(msg, flush=True)


@dataclass(frozen=True)
class BoosterState:
    feature_index: int
    threshold: float
    reject_above: bool

    def keep_value(self, value: float) -> bool:
        if self.reject_above:
            return value < self.threshold
        return value > self.threshold

    def keep_mask(self, X: np.ndarray) -> np.ndarray:
        col = X[:, self.feature_index] if X.shape[0] else np.zeros(0)
        if self.reject_above:
            return col < self.threshold
        return col > self.threshold

    def to_row(self) -> List[float]:
        return [int(self.feature_index), float(self.threshold), int(bool(self.reject_above))]

    @classmethod
    def from_row(cls, row: Sequence[float]) -> "BoosterState":
        return cls(int(row[0]), float(row[1]), bool(int(row[2])))


def find_booster_state(
    labelled: LabelledSet,
    index: int,
    reject_above: bool,
    cfg: BoostingConfig,
) -> Tuple[float, Optional[BoosterState]]:
    """
    Best single-threshold split on one feature that strips negatives off one end
    while letting (almost) no positives through.

    Examples are sorted in the order the split would remove them; the deepest
    cut point that still satisfies ``pos < max_pos_ratio * neg`` wins. Cut
    points only fall between distinct values.
    """
    n_neg = labelled.n_neg
    if n_neg == 0:
        return 0.0, None
    vals = np.concatenate([labelled.neg[:, index], labelled.pos[:, index]])
    is_pos = np.concatenate([np.zeros(n_neg, dtype=bool), np.ones(labelled.n_pos, dtype=bool)])
    order = np.argsort(-vals if reject_above else vals, kind="mergesort")
    vals = vals[order]
    is_pos = is_pos[order]
    if vals.size < 2:
        return 0.0, None

    cum_pos = np.cumsum(is_pos)[:-1].astype(float)
    cum_neg = np.cumsum(~is_pos)[:-1].astype(float)
    ok = (cum_pos < cfg.max_pos_ratio * cum_neg) & (vals[:-1] != vals[1:])
    hits = np.flatnonzero(ok)
    if hits.size == 0:
        return 0.0, None

    i = int(hits[-1])
    removed = cum_neg[i]
    proportion = removed / float(n_neg)
    if proportion < cfg.min_neg_fraction or removed < cfg.min_neg_removed:
        return 0.0, None
    threshold = 0.5 * (vals[i] + vals[i + 1])
    _log(f"[boosting] candidate idx={index} reject_above={reject_above} thr={threshold:.6g} removed={proportion:.4f}")
    return float(proportion), BoosterState(int(index), float(threshold), bool(reject_above))


def find_best_booster_state(labelled: LabelledSet, cfg: BoostingConfig) -> Optional[BoosterState]:
    best_prop, best = 0.0, None
    if labelled.n_neg == 0:
        return None
    for reject_above in (False, True):
        for idx in range(labelled.dims):
            prop, state = find_booster_state(labelled, idx, reject_above, cfg)
            if prop > best_prop:
                best_prop, best = prop, state
    if best is not None:
        _log(f"[boosting] best stage {best} proportion removed={best_prop:.4f}")
    return best


def apply_booster(labelled: LabelledSet, state: BoosterState) -> LabelledSet:
    return labelled.filter(state.keep_mask(labelled.neg), state.keep_mask(labelled.pos))


def build_cascade(labelled: LabelledSet, cfg: BoostingConfig) -> Tuple[List[BoosterState], LabelledSet]:
    states: List[BoosterState] = []
    current = labelled
    while True:
        state = find_best_booster_state(current, cfg)
        if state is None:
            break
        before = current.n_neg
        current = apply_booster(current, state)
        if current.n_neg >= before:
            raise NumericalError(f"Boosting stage {state} did not remove any negatives ({before} -> {current.n_neg})")
        states.append(state)
        _log(f"[boosting] stage {len(states)}: neg {before}->{current.n_neg} pos={current.n_pos}")
    return states, current


class BoostedFilters:
    """Runtime cascade: a candidate survives only if every stage keeps it."""

    def __init__(self, states: Sequence[BoosterState]):
        self.states = list(states)

    def keep_candidate(self, feature: FeatureLike) -> bool:
        for state in self.states:
            if isinstance(feature, FeatureProvider):
                v = feature.value(state.feature_index)
            else:
                v = float(np.asarray(feature, dtype=float).ravel()[state.feature_index])
            if not np.isfinite(v):
                raise NumericalError(f"non-finite value at feature {state.feature_index}")
            if not state.keep_value(v):
                return False
        return True

    def keep_mask(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        mask = np.ones(X.shape[0], dtype=bool)
        for state in self.states:
            mask &= state.keep_mask(X)
        return mask
