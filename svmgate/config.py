import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import ConfigError

FEATURE_SELECTION_MODES = ("none", "file", "backward", "forward")


@dataclass
class BoostingConfig:
    max_pos_ratio: float = 0.0005
    min_neg_fraction: float = 0.1
    min_neg_removed: int = 150


@dataclass
class HyperparamRange:
    lo: float
    hi: float
    steps: int


@dataclass
class TrainingConfig:
    neg_relative_weight: float = 1.0
    feature_selection: str = "backward"
    filter_hyperparams: bool = True
    filter_keep: Optional[int] = None
    k_folds: int = 6
    n_jobs: int = 6
    job_timeout: Optional[float] = None
    use_boosting: bool = False
    min_examples_per_class: int = 20
    feature_penalty: float = 0.003
    nu: HyperparamRange = field(default_factory=lambda: HyperparamRange(0.0005, 0.4, 10))
    loggamma: HyperparamRange = field(default_factory=lambda: HyperparamRange(-14.0, 5.0, 10))

    @property
    def hyperparams_to_keep(self) -> int:
        return int(self.filter_keep) if self.filter_keep else int(self.k_folds)


@dataclass
class CalibrationConfig:
    boundary_lo: float = -1.0
    boundary_hi: float = 1.0
    boundary_step: float = 0.1
    boundary_diagnostics: bool = True
    target_precision: Optional[float] = None


@dataclass
class RunConfig:
    out_dir: str = "outputs"
    label: str = "gate"
    progress: bool = True
    dump_features: bool = True
    training: TrainingConfig = field(default_factory=TrainingConfig)
    boosting: BoostingConfig = field(default_factory=BoostingConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)


def load_config(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f)
    except UnicodeDecodeError:
        # Some editors save UTF-8 with BOM
        with open(path, "r", encoding="utf-8-sig") as f:
            cfg = yaml.safe_load(f)
    if cfg is None:
        cfg = {}
    if not isinstance(cfg, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    validate_config(cfg)
    return cfg


def validate_config(cfg: Dict[str, Any]) -> None:
    def _require(section, key, pred, msg):
        node = cfg.get(section, {}) or {}
        if key not in node:
            return
        if not pred(node[key]):
            raise ConfigError(f"{section}.{key}: {msg}")

    num = lambda x: isinstance(x, (int, float)) and not isinstance(x, bool)

    _require("training", "neg_relative_weight", lambda x: num(x) and x > 0, "must be > 0")
    _require("training", "feature_selection", lambda x: x in FEATURE_SELECTION_MODES,
             f"must be one of {'|'.join(FEATURE_SELECTION_MODES)}")
    _require("training", "k_folds", lambda x: isinstance(x, int) and x >= 2, "must be an int >= 2")
    _require("training", "n_jobs", lambda x: isinstance(x, int) and (x >= 1 or x == -1), "must be >= 1 or -1")
    _require("training", "filter_keep", lambda x: x is None or (isinstance(x, int) and x >= 1), "must be >= 1")
    _require("training", "job_timeout", lambda x: x is None or (num(x) and x > 0), "must be > 0")
    _require("training", "min_examples_per_class", lambda x: isinstance(x, int) and x >= 1, "must be >= 1")
    _require("training", "feature_penalty", lambda x: num(x) and x >= 0, "must be >= 0")
    _require("boosting", "max_pos_ratio", lambda x: num(x) and x >= 0, "must be >= 0")
    _require("boosting", "min_neg_fraction", lambda x: num(x) and 0 <= x <= 1, "must be in [0,1]")
    _require("boosting", "min_neg_removed", lambda x: isinstance(x, int) and x >= 0, "must be >= 0")
    _require("calibration", "boundary_step", lambda x: num(x) and x > 0, "must be > 0")
    _require("calibration", "target_precision", lambda x: x is None or (num(x) and 0 <= x <= 1),
             "must be in [0,1]")

    hp = cfg.get("hyperparams", {}) or {}
    for name in ("nu", "loggamma"):
        rng = hp.get(name)
        if rng is None:
            continue
        for k in ("lo", "hi", "steps"):
            if k not in rng:
                raise ConfigError(f"Missing config key: hyperparams.{name}.{k}")
        if not (float(rng["lo"]) < float(rng["hi"])):
            raise ConfigError(f"hyperparams.{name}: lo must be < hi")
        if int(rng["steps"]) < 1:
            raise ConfigError(f"hyperparams.{name}.steps must be >= 1")
    if "nu" in hp and float(hp["nu"]["lo"]) <= 0:
        raise ConfigError("hyperparams.nu.lo must be > 0")

    cal = cfg.get("calibration", {}) or {}
    if "boundary_lo" in cal and "boundary_hi" in cal:
        if float(cal["boundary_lo"]) >= float(cal["boundary_hi"]):
            raise ConfigError("calibration.boundary_lo must be < boundary_hi")


def _range(node: Optional[Dict[str, Any]], default: HyperparamRange) -> HyperparamRange:
    if not node:
        return default
    return HyperparamRange(lo=float(node["lo"]), hi=float(node["hi"]), steps=int(node["steps"]))


def build_run_config(cfg: Dict[str, Any]) -> RunConfig:
    io = cfg.get("io", {}) or {}
    tr = cfg.get("training", {}) or {}
    bo = cfg.get("boosting", {}) or {}
    hp = cfg.get("hyperparams", {}) or {}
    cal = cfg.get("calibration", {}) or {}

    base = TrainingConfig()
    training = TrainingConfig(
        neg_relative_weight=float(tr.get("neg_relative_weight", base.neg_relative_weight)),
        feature_selection=str(tr.get("feature_selection", base.feature_selection)),
        filter_hyperparams=bool(tr.get("filter_hyperparams", base.filter_hyperparams)),
        filter_keep=tr.get("filter_keep", base.filter_keep),
        k_folds=int(tr.get("k_folds", base.k_folds)),
        n_jobs=int(tr.get("n_jobs", base.n_jobs)),
        job_timeout=tr.get("job_timeout", base.job_timeout),
        use_boosting=bool(tr.get("use_boosting", base.use_boosting)),
        min_examples_per_class=int(tr.get("min_examples_per_class", base.min_examples_per_class)),
        feature_penalty=float(tr.get("feature_penalty", base.feature_penalty)),
        nu=_range(hp.get("nu"), base.nu),
        loggamma=_range(hp.get("loggamma"), base.loggamma),
    )
    boosting = BoostingConfig(
        max_pos_ratio=float(bo.get("max_pos_ratio", BoostingConfig.max_pos_ratio)),
        min_neg_fraction=float(bo.get("min_neg_fraction", BoostingConfig.min_neg_fraction)),
        min_neg_removed=int(bo.get("min_neg_removed", BoostingConfig.min_neg_removed)),
    )
    target = cal.get("target_precision", CalibrationConfig.target_precision)
    calibration = CalibrationConfig(
        boundary_lo=float(cal.get("boundary_lo", CalibrationConfig.boundary_lo)),
        boundary_hi=float(cal.get("boundary_hi", CalibrationConfig.boundary_hi)),
        boundary_step=float(cal.get("boundary_step", CalibrationConfig.boundary_step)),
        boundary_diagnostics=bool(cal.get("boundary_diagnostics", CalibrationConfig.boundary_diagnostics)),
        target_precision=None if target is None else float(target),
    )
    return RunConfig(
        out_dir=str(io.get("out_dir", RunConfig.out_dir)),
        label=str(io.get("label", RunConfig.label)),
        progress=bool(io.get("progress", RunConfig.progress)),
        dump_features=bool(io.get("dump_features", RunConfig.dump_features)),
        training=training,
        boosting=boosting,
        calibration=calibration,
    )
