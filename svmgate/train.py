from __future__ import annotations

import argparse
import hashlib
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import scipy
import sklearn

from .boosting import build_cascade
from .calibration import calibrate
from .config import RunConfig, build_run_config, load_config
from .crossval import KFoldTrainValidate
from .features import ExampleStore, FeatureLike, FeatureSubsetSelector, as_provider
from .io_utils import ensure_dir, skip_if_exists
from .scoring import ClassWeights
from .search import SubsetSearch
from .state import SavedState, state_path
from .util import exception_to_report


def _log(msg: str) -> None:
    print(msg, flush=True)


# ------------------------ fingerprints ------------------------


def _sha256_path(p: Path) -> str:
    try:
        with open(p, "rb") as fh:
            return hashlib.sha256(fh.read()).hexdigest()
    except OSError:
        return ""


def _write_fingerprint(out_dir: Path, stage: str, cfg_path: Path, extra: dict) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    here = Path(__file__).parent
    fp = {
        "stage": stage,
        "python": sys.version,
        "numpy": np.__version__,
        "pandas": pd.__version__,
        "scipy": scipy.__version__,
        "sklearn": sklearn.__version__,
        "cfg_path": str(cfg_path),
        "cfg_sha256": _sha256_path(cfg_path),
        "code": {
            name: _sha256_path(here / name)
            for name in ("train.py", "search.py", "crossval.py", "calibration.py", "boosting.py")
        },
    }
    if extra:
        fp.update(extra)
    (out_dir / f"run_fingerprint_{stage}.json").write_text(json.dumps(fp, indent=2))


# ------------------------ trainer ------------------------


class SVMTrainer:
    """
    Collects labelled examples, then runs cascade -> normalisation -> subset and
    hyperparameter search -> calibration, and saves the result.
    """

    def __init__(self, cfg: RunConfig):
        self.cfg = cfg
        self.out_dir = Path(cfg.out_dir)
        ensure_dir(self.out_dir)
        dump = self.out_dir / f"{cfg.label}-features.tsv" if cfg.dump_features else None
        self.store = ExampleStore(dump)

    def add_training_feature(self, feature: FeatureLike, label: bool) -> None:
        self.store.add_example(as_provider(feature).entire_feature(), label)

    def train(self) -> Optional[SavedState]:
        tc = self.cfg.training
        n_neg, n_pos = self.store.counts()
        summary: List[str] = [f"Training from {n_pos} positive and {n_neg} negative examples"]
        _log(f"[train] {summary[-1]}")
        if n_pos < tc.min_examples_per_class or n_neg < tc.min_examples_per_class:
            _log("[train] INSUFFICIENT TRAINING DATA")
            return None

        labelled = self.store.snapshot()
        boosters = []
        if tc.use_boosting:
            boosters, labelled = build_cascade(labelled, self.cfg.boosting)
        summary.append(f"{labelled.n_pos} positive and {labelled.n_neg} negative examples after boosting")
        _log(f"[train] {summary[-1]}")

        selector = FeatureSubsetSelector()
        if labelled.n_pos > 0 and labelled.n_neg > 0:
            weights = ClassWeights.balanced(labelled.n_pos, labelled.n_neg, tc.neg_relative_weight)
            _log(f"[train] negative weight={weights.w_neg:.6g}")
            selector.find_normalizing_coefficients(labelled)

            result = SubsetSearch(labelled, selector, weights, tc, self.out_dir, self.cfg.label,
                                  progress=self.cfg.progress).run()
            kfold = KFoldTrainValidate(labelled, selector, tc.k_folds, weights,
                                       feature_penalty=tc.feature_penalty)
            cal = calibrate(kfold, result.best, self.out_dir, self.cfg.calibration)
            summary.extend(cal.summary)
            state = SavedState(
                label=self.cfg.label,
                booster_states=tuple(boosters),
                selector=selector.to_dict(),
                sign_correction=cal.calibration.sign_correction,
                lookup=cal.lookup,
                sigmoid=cal.sigmoid,
                training_details="\n".join(summary),
                model=cal.model,
            )
        else:
            _log("[train] boosting left no training data; saving boosting-only classifier")
            state = SavedState(
                label=self.cfg.label,
                booster_states=tuple(boosters),
                selector=selector.to_dict(),
                sign_correction=0.0,
                training_details="\n".join(summary),
            )
        state.save(self.out_dir)
        return state


# ------------------------ CLI ------------------------


def read_training_table(path: Path) -> tuple[np.ndarray, np.ndarray]:
    """
    ``.csv`` with a ``label`` column, or the headerless features dump
    (``label<TAB>v0<TAB>v1...``).
    """
    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path)
        if "label" not in df.columns:
            raise ValueError(f"{path}: missing 'label' column")
        y = df["label"].astype(int).to_numpy() > 0
        X = df.drop(columns=["label"]).to_numpy(dtype=float)
        return X, y
    df = pd.read_csv(path, sep="\t", header=None).dropna(axis=1, how="all")
    y = df.iloc[:, 0].astype(int).to_numpy() > 0
    X = df.iloc[:, 1:].to_numpy(dtype=float)
    return X, y


def parse_args(argv: Sequence[str] | None = None):
    p = argparse.ArgumentParser(description="Train an svmgate classifier")
    p.add_argument("--config", required=True)
    p.add_argument("--mode", required=True, choices=["preflight", "train"])
    p.add_argument("--features", default=None)
    p.add_argument("--force", action="store_true")
    return p.parse_args(argv)


def run_train(cfg_path: Path, features_path: Path, force: bool) -> tuple[Optional[SavedState], bool]:
    """Returns ``(state, skipped)``; state is None when there was too little data."""
    cfg = load_config(str(cfg_path))
    rc = build_run_config(cfg)
    out_dir = Path(rc.out_dir)
    if skip_if_exists(state_path(out_dir, rc.label), force):
        _log(f"[train] {state_path(out_dir, rc.label)} exists; use --force to retrain")
        return None, True

    X, y = read_training_table(features_path)
    dump = out_dir / f"{rc.label}-features.tsv"
    if rc.dump_features and dump.resolve() == features_path.resolve():
        rc.dump_features = False
    trainer = None
    try:
        trainer = SVMTrainer(rc)
        for row, label in zip(X, y):
            trainer.add_training_feature(row, bool(label))
        state = trainer.train()
    except Exception as e:
        context = {"label": rc.label, "features_path": str(features_path), "n_rows": int(len(y))}
        if trainer is not None:
            context["n_neg"], context["n_pos"] = trainer.store.counts()
        rep = exception_to_report("train", cfg, str(out_dir), e, context=context)
        ensure_dir(out_dir)
        (out_dir / "crash_report.json").write_text(json.dumps(rep, indent=2))
        raise
    finally:
        if trainer is not None:
            trainer.store.close()
    _write_fingerprint(out_dir, "train", cfg_path, {
        "features_path": str(features_path),
        "features_sha256": _sha256_path(features_path),
        "n_examples": int(len(y)),
        "trained": state is not None,
    })
    return state, False


def main(argv: Sequence[str] | None = None):
    args = parse_args(argv)

    if args.mode == "preflight":
        rc = build_run_config(load_config(args.config))
        _log("Preflight OK")
        _log(f"out_dir={rc.out_dir} label={rc.label} feature_selection={rc.training.feature_selection} "
             f"k_folds={rc.training.k_folds} n_jobs={rc.training.n_jobs} use_boosting={rc.training.use_boosting}")
        return

    if args.mode == "train":
        if not args.features:
            raise SystemExit("--features is required for --mode train")
        state, skipped = run_train(Path(args.config), Path(args.features), args.force)
        if state is None and not skipped:
            sys.exit(1)
        _log("Train DONE")
        return

    raise ValueError(f"Unknown mode: {args.mode}")


if __name__ == "__main__":
    main()
