from __future__ import annotations

import math
from dataclasses import dataclass, field
from multiprocessing import TimeoutError as JobTimeout
from pathlib import Path
from typing import List, Sequence, Set, Tuple

import pandas as pd
from joblib import Parallel, delayed
from tqdm.auto import tqdm

from .config import HyperparamRange, TrainingConfig
from .crossval import Hyperparameterisation, KFoldTrainValidate
from .errors import ConfigError
from .features import FeatureSubsetSelector, LabelledSet
from .io_utils import ensure_dir, write_tsv
from .scoring import ClassWeights
from .util import log_b, subset_to_str

Subset = Tuple[int, ...]

LOG_NU_BASE = 1.5


def _log(msg: str) -> None:
    print(msg, flush=True)


# ------------------------ hyperparameter grid ------------------------


def load_hyperparams(out_dir: Path, name: str, default: HyperparamRange) -> HyperparamRange:
    """
    Range override for one hyperparameter from ``<out_dir>/<name>-LoHiSteps``
    ("lo hi steps", whitespace separated). Missing file: write ``default`` there.
    """
    path = Path(out_dir) / f"{name}-LoHiSteps"
    _log(f"[search] looking for hyperparameter ranges in {path}")
    if path.exists():
        toks = path.read_text(encoding="utf-8").split()
        try:
            rng = HyperparamRange(lo=float(toks[0]), hi=float(toks[1]), steps=int(toks[2]))
        except (IndexError, ValueError) as e:
            raise ConfigError(f"{path}: expected 'lo hi steps', got {toks!r}") from e
        if rng.steps < 1 or not rng.lo < rng.hi:
            raise ConfigError(f"{path}: need lo < hi and steps >= 1, got {toks!r}")
    else:
        ensure_dir(path.parent)
        path.write_text(f"{float(default.lo)!r} {float(default.hi)!r} {default.steps}", encoding="utf-8")
        rng = default
    _log(f"[search] {name}: lo={rng.lo:g} hi={rng.hi:g} steps={rng.steps}")
    return rng


def _stepped(lo: float, hi: float, steps: int) -> List[float]:
    step = (hi - lo) / (steps - 0.999)
    out = []
    x = lo
    while x < hi:
        out.append(x)
        x += step
    return out


def hyperparameter_grid(out_dir: Path, cfg: TrainingConfig) -> List[Hyperparameterisation]:
    nu_rng = load_hyperparams(out_dir, "nu", cfg.nu)
    lg_rng = load_hyperparams(out_dir, "loggamma", cfg.loggamma)
    if nu_rng.lo <= 0:
        raise ConfigError(f"nu range must be positive, got lo={nu_rng.lo}")
    nus = [LOG_NU_BASE ** v for v in _stepped(log_b(nu_rng.lo, LOG_NU_BASE), log_b(nu_rng.hi, LOG_NU_BASE), nu_rng.steps)]
    gammas = [math.exp(v) for v in _stepped(lg_rng.lo, lg_rng.hi, lg_rng.steps)]
    return [Hyperparameterisation(nu=nu, gamma=g) for g in gammas for nu in nus]


def filter_hyperparameters(points: Sequence[Hyperparameterisation], keep: int) -> List[Hyperparameterisation]:
    """Top ``keep`` points by CV score; equal scores keep grid order."""
    if len(points) <= keep:
        return list(points)
    order = sorted(range(len(points)), key=lambda i: -points[i].cv_score)
    return [points[i] for i in order[:keep]]


# ------------------------ feature subsets ------------------------


def read_feature_set_file(path: Path, n_dims: int) -> Subset:
    subset: List[int] = []
    for tok in path.read_text(encoding="utf-8").split():
        try:
            idx = int(tok)
        except ValueError as e:
            raise ConfigError(f"{path}: bad feature index {tok!r}") from e
        if idx < 0:
            break
        if idx >= n_dims:
            raise ConfigError(f"{path}: feature index {idx} out of range for {n_dims} dims")
        subset.append(idx)
    if not subset:
        raise ConfigError(f"{path}: no feature indices")
    _log(f"[search] loaded feature subset {subset_to_str(subset)} from {path}")
    return tuple(subset)


def make_new_subsets(best: Subset, n_dims: int, forward: bool) -> Set[Subset]:
    if forward:
        return {tuple(best) + (i,) for i in range(n_dims) if i not in best}
    return {tuple(j for j in best if j != i) for i in best}


def initial_subsets(mode: str, n_dims: int, out_dir: Path) -> Tuple[str, Set[Subset]]:
    feature_file = Path(out_dir) / "featureSet"
    if feature_file.exists():
        return "file", {read_feature_set_file(feature_file, n_dims)}
    if mode == "file":
        raise ConfigError(f"feature_selection=file but {feature_file} does not exist")
    if mode in ("backward", "none"):
        return mode, {tuple(range(n_dims))}
    if mode == "forward":
        return mode, make_new_subsets((), n_dims, forward=True)
    raise ConfigError(f"unknown feature selection mode {mode!r}")


# ------------------------ search ------------------------


RESULT_COLUMNS = ["size", "subset", "nu", "gamma", "score"]


@dataclass
class SearchResult:
    best: Hyperparameterisation
    subset: Subset
    all_results: List[dict] = field(default_factory=list)
    best_results: List[dict] = field(default_factory=list)


def _result_row(subset: Subset, point: Hyperparameterisation) -> dict:
    return {"size": len(subset), "subset": subset_to_str(subset), "nu": point.nu,
            "gamma": point.gamma, "score": point.cv_score}


class SubsetSearch:
    """
    Joint search over feature subsets and (nu, gamma).

    Subset sizes are visited from the full dimension downwards. Each candidate
    subset is scored over the whole (possibly filtered) grid in one threaded
    batch; the best subset of a size seeds the candidates of the next size.
    """

    def __init__(self, labelled: LabelledSet, selector: FeatureSubsetSelector, weights: ClassWeights,
                 cfg: TrainingConfig, out_dir: Path, label: str, progress: bool = True):
        self.labelled = labelled
        self.selector = selector
        self.weights = weights
        self.cfg = cfg
        self.out_dir = Path(out_dir)
        self.label = label
        self.progress = progress
        self.n_dims = labelled.dims

    def _kfold(self, subset: Subset) -> KFoldTrainValidate:
        self.selector.set_subset(subset)
        return KFoldTrainValidate(self.labelled, self.selector, self.cfg.k_folds, self.weights,
                                  feature_penalty=self.cfg.feature_penalty)

    def score_grid(self, subset: Subset, grid: Sequence[Hyperparameterisation]) -> List[Hyperparameterisation]:
        kfold = self._kfold(subset)
        _log(f"[search] training subset {subset_to_str(subset)} with {len(grid)} hyperparameterisations")
        try:
            scored = Parallel(n_jobs=self.cfg.n_jobs, prefer="threads", timeout=self.cfg.job_timeout)(
                delayed(kfold.train_and_validate)(p) for p in grid
            )
        except JobTimeout as e:
            raise TimeoutError(f"hyperparameter job on subset {subset_to_str(subset)} "
                               f"exceeded {self.cfg.job_timeout}s") from e
        self._write_surface(subset, scored)
        return list(scored)

    def _write_surface(self, subset: Subset, scored: Sequence[Hyperparameterisation]) -> None:
        df = pd.DataFrame({
            "nu": [p.nu for p in scored],
            "loggamma": [p.loggamma for p in scored],
            "score": [p.cv_score for p in scored],
            "num_svs": [p.num_svs for p in scored],
        })
        write_tsv(self.out_dir / "hyperparams" / f"surface{subset_to_str(subset)}.tsv", df)

    def _write_results(self, name: str, rows: List[dict]) -> None:
        write_tsv(self.out_dir / f"{self.label}-{name}.tsv", pd.DataFrame(rows, columns=RESULT_COLUMNS))

    def run(self) -> SearchResult:
        mode, candidates = initial_subsets(self.cfg.feature_selection, self.n_dims, self.out_dir)
        grid = hyperparameter_grid(self.out_dir, self.cfg)
        keep = self.cfg.hyperparams_to_keep
        _log(f"[search] mode={mode} dims={self.n_dims} grid={len(grid)} k={self.cfg.k_folds}")

        best_overall = Hyperparameterisation(-1.0, -1.0)
        best_overall_subset: Subset = ()
        all_rows: List[dict] = []
        best_rows: List[dict] = []

        for _ in range(self.n_dims, 0, -1):
            best_size = Hyperparameterisation(-1.0, -1.0)
            best_size_subset: Subset = ()
            ordered = sorted(candidates)
            it = tqdm(ordered, desc=f"subsets[{len(ordered[0])}]", dynamic_ncols=True, leave=False,
                      disable=not self.progress)
            for subset in it:
                scored = self.score_grid(subset, grid)
                best_subset = Hyperparameterisation(-1.0, -1.0)
                for p in scored:
                    if p.cv_score > best_subset.cv_score:
                        best_subset = p
                _log(f"[search] best for subset {subset_to_str(subset)}: {best_subset.to_string()} score={best_subset.cv_score:.6g}")

                if self.cfg.filter_hyperparams and len(subset) > self.n_dims // 3:
                    grid = filter_hyperparameters(scored, keep)
                else:
                    grid = scored

                all_rows.append(_result_row(subset, best_subset))
                self._write_results("allResults", all_rows)

                if best_subset.cv_score > best_size.cv_score:
                    best_size, best_size_subset = best_subset, subset

            best_rows.append(_result_row(best_size_subset, best_size))
            self._write_results("bestResults", best_rows)

            if best_size.cv_score >= best_overall.cv_score:
                best_overall, best_overall_subset = best_size, best_size_subset

            if mode in ("file", "none"):
                break
            candidates = make_new_subsets(best_size_subset, self.n_dims, forward=(mode == "forward"))
            if not candidates:
                break

        if not best_overall_subset:
            raise ConfigError("feature subset search produced no candidate")
        _log(f"[search] best subset has {len(best_overall_subset)} features: "
             f"{subset_to_str(best_overall_subset)} {best_overall.to_string()} score={best_overall.cv_score:.6g}")
        self.selector.set_subset(best_overall_subset)
        return SearchResult(best=best_overall, subset=best_overall_subset,
                            all_results=all_rows, best_results=best_rows)
