from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from . import engine
from .boosting import BoostedFilters
from .calibration import check_probability
from .config import build_run_config, load_config
from .features import FeatureLike
from .state import SavedState


def _log(msg: str) -> None:
    print(msg, flush=True)


class SVMClassifier:
    """
    Inference over a saved state: cascade, then selector + engine, then
    sign/boundary and the sigmoid. Stateless per call.
    """

    def __init__(self, state: SavedState):
        self.state = state
        self.filters = BoostedFilters(state.booster_states)
        self.selector = state.feature_selector()

    @classmethod
    def load(cls, out_dir, label: str, precision: Optional[float] = None) -> "SVMClassifier":
        return cls(SavedState.load(Path(out_dir), label, precision))

    def classify(self, feature: FeatureLike) -> float:
        if not self.filters.keep_candidate(feature):
            return -1.0
        if self.state.boosting_only:
            return 1.0
        x = self.selector.select_and_normalize(feature)
        raw = float(engine.predict_raw(self.state.model, x)[0])
        return float(self.state.sign_correction * (raw - self.state.boundary))

    def probability(self, feature: FeatureLike) -> Tuple[float, float]:
        self.state.sigmoid.validate()
        score = self.classify(feature)
        prob = check_probability(float(self.state.sigmoid.prob(score)))
        return prob, score

    def score_frame(self, df: pd.DataFrame) -> pd.DataFrame:
        X = df.to_numpy(dtype=float)
        self.state.sigmoid.validate()
        scores = np.full(X.shape[0], -1.0)
        keep = self.filters.keep_mask(X)
        if keep.any():
            if self.state.boosting_only:
                scores[keep] = 1.0
            else:
                raw = engine.predict_raw(self.state.model, self.selector.select_and_normalize_rows(X[keep]))
                scores[keep] = self.state.sign_correction * (raw - self.state.boundary)
        probs = np.asarray(self.state.sigmoid.prob(scores), dtype=float)
        for p in probs:
            check_probability(float(p))
        return pd.DataFrame({"score": scores, "prob": probs}, index=df.index)


def read_feature_table(path: Path) -> pd.DataFrame:
    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
    return pd.read_csv(path, sep=sep)


def main(argv=None):
    p = argparse.ArgumentParser(description="Score feature vectors with a trained svmgate classifier")
    p.add_argument("--config", required=True)
    p.add_argument("--features", required=True)
    p.add_argument("--out", required=True)
    p.add_argument("--precision", type=float, default=None)
    a = p.parse_args(argv)

    rc = build_run_config(load_config(a.config))
    precision = a.precision if a.precision is not None else rc.calibration.target_precision
    clf = SVMClassifier.load(rc.out_dir, rc.label, precision)
    df = read_feature_table(Path(a.features))
    out = pd.concat([df, clf.score_frame(df)], axis=1)
    Path(a.out).parent.mkdir(parents=True, exist_ok=True)
    out.to_csv(a.out, index=False)
    _log(f"[classify] scored {len(out)} rows -> {a.out}")


if __name__ == "__main__":
    main()
