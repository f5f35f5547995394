from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

from . import engine
from .boosting import BoosterState
from .calibration import PRLookup, SigmoidParams, interp_precision_boundary
from .errors import ConfigError
from .features import FeatureSubsetSelector
from .io_utils import write_json
from .util import safe_write


def _log(msg: str) -> None:
    print(msg, flush=True)


def state_path(out_dir: Path, label: str) -> Path:
    return Path(out_dir) / f"saved_state_{label}_subset.json"


def model_path(out_dir: Path, label: str) -> Path:
    return Path(out_dir) / f"saved_state_{label}.pkl"


@dataclass(frozen=True)
class SavedState:
    """
    Everything needed to reproduce classification after training.
    ``sign_correction == 0`` marks a boosting-only classifier with no engine model.
    """
    label: str
    booster_states: tuple
    selector: dict
    sign_correction: float
    lookup: PRLookup = PRLookup()
    sigmoid: SigmoidParams = SigmoidParams()
    boundary: float = 0.0
    training_details: str = ""
    model: Any = field(default=None, compare=False, repr=False)

    @property
    def boosting_only(self) -> bool:
        return self.sign_correction == 0

    def feature_selector(self) -> FeatureSubsetSelector:
        return FeatureSubsetSelector.from_dict(self.selector)

    def to_dict(self) -> dict:
        d = {
            "training_details": self.training_details,
            "booster_states": [s.to_row() for s in self.booster_states],
            "sign_correction": float(self.sign_correction),
            "sigmoid": self.sigmoid.to_dict(),
        }
        d.update(self.selector)
        d.update(self.lookup.to_dict())
        return d

    def save(self, out_dir: Path) -> Path:
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        if not self.boosting_only:
            if self.model is None:
                raise ConfigError(f"state {self.label}: sign_correction={self.sign_correction} but no model")
            safe_write(model_path(out_dir, self.label), lambda tmp: engine.serialize(self.model, Path(tmp)))
        path = state_path(out_dir, self.label)
        write_json(path, self.to_dict())
        _log(f"[state] saved {path}")
        return path

    @classmethod
    def load(cls, out_dir: Path, label: str, precision: Optional[float] = None) -> "SavedState":
        path = state_path(out_dir, label)
        if not path.exists():
            raise FileNotFoundError(f"Saved state file doesn't exist: {path}")
        try:
            d = json.loads(path.read_text(encoding="utf-8"))
            boosters: List[BoosterState] = [BoosterState.from_row(r) for r in d.get("booster_states", [])]
            sign = float(d["sign_correction"])
            lookup = PRLookup.from_dict(d)
            sigmoid = SigmoidParams.from_dict(d["sigmoid"]) if d.get("sigmoid") else SigmoidParams()
            selector = FeatureSubsetSelector.from_dict(d).to_dict()
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"malformed saved state {path}: {e}") from e

        boundary = 0.0
        if precision is not None and len(lookup):
            boundary = interp_precision_boundary(float(precision), lookup)
            _log(f"[state] boundary={boundary:.6g} for target precision {precision}")

        model = None
        if sign != 0:
            mp = model_path(out_dir, label)
            if not mp.exists():
                raise FileNotFoundError(f"Saved model file doesn't exist: {mp}")
            model = engine.deserialize(mp)
        else:
            _log("[state] boosted classifier has no engine model; boosting removed every example of one class")

        return cls(
            label=label,
            booster_states=tuple(boosters),
            selector=selector,
            sign_correction=sign,
            lookup=lookup,
            sigmoid=sigmoid,
            boundary=boundary,
            training_details=str(d.get("training_details", "")),
            model=model,
        )
