from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np

from .errors import ConfigError


def _log(msg: str) -> None:
    print(msg, flush=True)


@dataclass(frozen=True)
class ClassWeights:
    """Misclassification costs. Positives cost 1; negatives are reweighted so both classes count equally."""
    w_neg: float
    w_pos: float = 1.0

    @classmethod
    def balanced(cls, n_pos: int, n_neg: int, neg_relative_weight: float) -> "ClassWeights":
        if not neg_relative_weight > 0:
            raise ConfigError(f"negative relative weight must be > 0, got {neg_relative_weight}")
        if n_pos <= 0 or n_neg <= 0:
            raise ConfigError(f"class weights need both classes (pos={n_pos}, neg={n_neg})")
        return cls(w_neg=-float(neg_relative_weight) * n_pos / n_neg, w_pos=1.0)

    def engine_class_weight(self) -> Dict[int, float]:
        return {-1: abs(self.w_neg), 1: abs(self.w_pos)}

    def per_example(self, labels: np.ndarray) -> np.ndarray:
        labels = np.asarray(labels, dtype=bool)
        return np.where(labels, abs(self.w_pos), abs(self.w_neg))


@dataclass(frozen=True)
class Calibration:
    sign_correction: float = 1.0
    boundary: float = 0.0


@dataclass(frozen=True)
class ValidationResult:
    total_success_rate: float
    bsr: float
    class_rates: Tuple[float, float]
    precision: float
    recall: float
    calibration: Calibration
    responses: np.ndarray

    def summary_lines(self):
        return [
            f"Class 0 success rate={self.class_rates[0]:.6g}",
            f"Class 1 success rate={self.class_rates[1]:.6g}",
            f"BSR={self.bsr:.6g} dTotalSuccessRate={self.total_success_rate:.6g}",
            f"Precision={self.precision:.6g} Recall={self.recall:.6g}",
        ]


def total_success_rate(labels: np.ndarray, responses: np.ndarray, weights: ClassWeights) -> Tuple[float, Calibration]:
    """
    Weighted success rate of ``response > 0`` as a prediction of the label.
    A classifier that is wrong more often than right is flipped (sign -1), so
    the returned rate is never below 0.5 of the total weight.
    """
    labels = np.asarray(labels, dtype=bool)
    responses = np.asarray(responses, dtype=float)
    w = weights.per_example(labels)
    total = float(w.sum())
    if total <= 0:
        return 0.0, Calibration(1.0, 0.0)
    wrong = labels != (responses > 0)
    err = float(w[wrong].sum())
    if err < 0.5 * total:
        return (total - err) / total, Calibration(1.0, 0.0)
    return err / total, Calibration(-1.0, 0.0)


def _predicted(responses: np.ndarray, sign: float) -> np.ndarray:
    return (float(sign) * np.asarray(responses, dtype=float)) > 0


def balanced_success_rate(labels: np.ndarray, responses: np.ndarray, sign: float) -> Tuple[float, Tuple[float, float]]:
    labels = np.asarray(labels, dtype=bool)
    pred = _predicted(responses, sign)
    rates = []
    bsr = 0.0
    for cls in (False, True):
        sel = labels == cls
        n = int(sel.sum())
        rate = float((pred[sel] == cls).sum()) / n if n else 0.0
        rates.append(rate)
        bsr += 0.5 * rate
    return bsr, (rates[0], rates[1])


def precision_recall(labels: np.ndarray, responses: np.ndarray, sign: float) -> Tuple[float, float]:
    labels = np.asarray(labels, dtype=bool)
    pred = _predicted(responses, sign)
    tp = int((pred & labels).sum())
    n_pred = int(pred.sum())
    n_true = int(labels.sum())
    precision = tp / n_pred if n_pred else float("nan")
    recall = tp / n_true if n_true else float("nan")
    return float(precision), float(recall)


def evaluate(labels: np.ndarray, raw: np.ndarray, weights: ClassWeights, boundary: float = 0.0,
             verbose: bool = False) -> ValidationResult:
    responses = np.asarray(raw, dtype=float) - float(boundary)
    rate, cal = total_success_rate(labels, responses, weights)
    bsr, class_rates = balanced_success_rate(labels, responses, cal.sign_correction)
    precision, recall = precision_recall(labels, responses, cal.sign_correction)
    res = ValidationResult(
        total_success_rate=rate,
        bsr=bsr,
        class_rates=class_rates,
        precision=precision,
        recall=recall,
        calibration=Calibration(cal.sign_correction, float(boundary)),
        responses=responses,
    )
    if verbose:
        _log(f"[scoring] boundary={boundary:.3g} sign={cal.sign_correction:+.0f} " + " ".join(res.summary_lines()))
    return res
