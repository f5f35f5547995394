from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import least_squares
from scipy.special import expit

from . import engine
from .config import CalibrationConfig
from .crossval import Hyperparameterisation, KFoldTrainValidate
from .errors import NumericalError
from .io_utils import write_tsv
from .scoring import Calibration, ClassWeights, evaluate


def _log(msg: str) -> None:
    print(msg, flush=True)


def check_probability(p: float, what: str = "probability") -> float:
    if not (np.isfinite(p) and 0.0 <= p <= 1.0):
        raise NumericalError(f"{what} {p} is not a probability")
    return float(p)


def logistic(x):
    return expit(x)


def logistic_inv(p: float) -> float:
    check_probability(p)
    q = float(np.clip(p, 0.0001, 0.9999))
    return -float(np.log(1.0 / q - 1.0))


@dataclass(frozen=True)
class SigmoidParams:
    """Bounded logistic: maps a signed score into ``[thresh_lo, thresh_hi]``."""
    thresh_lo: float = 0.1
    thresh_hi: float = 0.9
    shift: float = 0.0
    scale: float = 1.0

    def validate(self) -> None:
        check_probability(self.thresh_lo, "sigmoid thresh_lo")
        check_probability(self.thresh_hi, "sigmoid thresh_hi")
        if self.thresh_lo >= self.thresh_hi:
            raise NumericalError(f"Bad sigmoid thresholds lo={self.thresh_lo} hi={self.thresh_hi}")
        if not (np.isfinite(self.scale) and self.scale > 0):
            raise NumericalError(f"Bad sigmoid scale {self.scale}")

    def prob(self, x):
        return self.thresh_lo + (self.thresh_hi - self.thresh_lo) * logistic(self.scale * (np.asarray(x, dtype=float) - self.shift))

    def to_params(self) -> np.ndarray:
        return np.array([self.scale, self.shift, logistic_inv(self.thresh_hi), logistic_inv(self.thresh_lo)])

    @classmethod
    def from_params(cls, x: Sequence[float]) -> "SigmoidParams":
        return cls(thresh_lo=float(logistic(x[3])), thresh_hi=float(logistic(x[2])),
                   shift=float(x[1]), scale=float(x[0]))

    def to_dict(self) -> dict:
        return {"thresh_lo": self.thresh_lo, "thresh_hi": self.thresh_hi, "scale": self.scale, "shift": self.shift}

    @classmethod
    def from_dict(cls, d: dict) -> "SigmoidParams":
        return cls(thresh_lo=float(d["thresh_lo"]), thresh_hi=float(d["thresh_hi"]),
                   shift=float(d["shift"]), scale=float(d["scale"]))


def fit_sigmoid(labels: np.ndarray, responses: np.ndarray, sign: float,
                initial: SigmoidParams = SigmoidParams()) -> SigmoidParams:
    """Least-squares fit of the bounded logistic to 0/1 labels over sign-corrected responses."""
    target = np.asarray(labels, dtype=bool).astype(float)
    x = float(sign) * np.asarray(responses, dtype=float)

    def residuals(params):
        return SigmoidParams.from_params(params).prob(x) - target

    x0 = initial.to_params()
    method = "lm" if x.size >= x0.size else "trf"
    fit = least_squares(residuals, x0, method=method)
    params = SigmoidParams.from_params(fit.x)
    params.validate()
    _log(f"[calibration] sigmoid lo={params.thresh_lo:.4f} hi={params.thresh_hi:.4f} "
         f"scale={params.scale:.4g} shift={params.shift:.4g} cost={fit.cost:.4g}")
    return params


# ------------------------ precision / boundary lookup ------------------------


@dataclass(frozen=True)
class PRLookup:
    boundaries: Tuple[float, ...] = ()
    precisions: Tuple[float, ...] = ()

    def __len__(self) -> int:
        return len(self.boundaries)

    def to_dict(self) -> dict:
        return {"boundaries": list(self.boundaries), "precision": [None if not np.isfinite(p) else p for p in self.precisions]}

    @classmethod
    def from_dict(cls, d: dict) -> "PRLookup":
        b = tuple(float(v) for v in d.get("boundaries", []) or [])
        p = tuple(float("nan") if v is None else float(v) for v in d.get("precision", []) or [])
        if len(b) != len(p):
            raise ValueError(f"boundaries/precision length mismatch {len(b)} vs {len(p)}")
        return cls(b, p)


def boundary_samples(lo: float, hi: float, step: float) -> np.ndarray:
    n = int(np.floor((hi - lo) / step + 1e-9)) + 1
    return np.round(lo + step * np.arange(n), 10)


def precision_lookup(labels: np.ndarray, raw: np.ndarray, weights: ClassWeights,
                     lo: float = -1.0, hi: float = 1.0, step: float = 0.1) -> PRLookup:
    bounds, precs = [], []
    for b in boundary_samples(lo, hi, step):
        res = evaluate(labels, raw, weights, boundary=float(b))
        bounds.append(float(b))
        precs.append(res.precision)
    return PRLookup(tuple(bounds), tuple(precs))


def interp_precision_boundary(target: float, lookup: PRLookup) -> float:
    """
    Boundary expected to give ``target`` precision: line through the two
    lookup samples whose precision is closest to the target. Works off the
    ends of the sampled range too.
    """
    b = np.asarray(lookup.boundaries, dtype=float)
    p = np.asarray(lookup.precisions, dtype=float)
    ok = np.isfinite(p)
    b, p = b[ok], p[ok]
    if b.size < 2:
        raise NumericalError(f"precision lookup has {b.size} usable samples, need 2")
    order = np.argsort(np.abs(p - target), kind="mergesort")
    (b1, p1), (b2, p2) = (b[order[0]], p[order[0]]), (b[order[1]], p[order[1]])
    if p1 == p2:
        raise NumericalError(f"Line fit failed (horizontal line at precision {p1})")
    m = (b2 - b1) / (p2 - p1)
    c = b1 - m * p1
    out = float(target * m + c)
    if not np.isfinite(out):
        raise NumericalError(f"interpolated boundary is not finite (m={m}, c={c})")
    return out


# ------------------------ final fit ------------------------


@dataclass
class CalibrationResult:
    model: Any
    calibration: Calibration
    lookup: PRLookup
    sigmoid: SigmoidParams
    score: float
    summary: List[str] = field(default_factory=list)


def write_decision_boundaries(model, point: Hyperparameterisation, dims: int, out_dir: Path) -> List[Path]:
    """Raw response over a [-2, 2]^2 grid for each consecutive pair of selected features, others at 0."""
    folder = Path(out_dir) / "boundaries"
    grid = np.round(np.linspace(-2.0, 2.0, 101), 2)
    gi, gj = np.meshgrid(grid, grid, indexing="ij")
    written = []
    for i in range(dims - 1):
        X = np.zeros((gi.size, dims), dtype=float)
        X[:, i] = gi.ravel()
        X[:, i + 1] = gj.ravel()
        resp = engine.predict_raw(model, X)
        path = folder / f"{point.to_string()}i={i}j={i + 1}.tsv"
        write_tsv(path, pd.DataFrame({"i": X[:, i], "j": X[:, i + 1], "response": resp}))
        written.append(path)
    if written:
        _log(f"[calibration] wrote {len(written)} decision boundary files to {folder}")
    return written


def calibrate(kfold: KFoldTrainValidate, best: Hyperparameterisation, out_dir: Path,
              cfg: CalibrationConfig) -> CalibrationResult:
    model, X, y = kfold.train_on_all(best)
    raw = engine.predict_raw(model, X)

    lookup = precision_lookup(y, raw, kfold.weights, cfg.boundary_lo, cfg.boundary_hi, cfg.boundary_step)
    for b, p in zip(lookup.boundaries, lookup.precisions):
        _log(f"[calibration] boundary={b:+.2f} precision={p:.4f}")

    if cfg.boundary_diagnostics:
        write_decision_boundaries(model, best, kfold.dims, out_dir)

    final = evaluate(y, raw, kfold.weights, boundary=0.0, verbose=True)
    sigmoid = fit_sigmoid(y, final.responses, final.calibration.sign_correction)
    summary = final.summary_lines()
    summary.append(f"Score on training set after retrain on all: {final.total_success_rate:.6g}")
    for line in summary:
        _log(f"[calibration] {line}")
    return CalibrationResult(
        model=model,
        calibration=final.calibration,
        lookup=lookup,
        sigmoid=sigmoid,
        score=final.total_success_rate,
        summary=summary,
    )
