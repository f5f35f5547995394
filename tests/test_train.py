import json
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import yaml

from svmgate.classifier import SVMClassifier
from svmgate.classifier import main as classify_main
from svmgate.config import build_run_config, load_config
from svmgate.errors import ConfigError
from svmgate.features import LazyFeature
from svmgate.state import model_path, state_path
from svmgate.train import SVMTrainer, main as train_main, read_training_table


def _fill(trainer, labelled):
    for row in labelled.neg:
        trainer.add_training_feature(row, False)
    for row in labelled.pos:
        vals = row.tolist()
        trainer.add_training_feature(LazyFeature(lambda i, v=vals: v[i], len(vals)), True)


def test_end_to_end_training(separable, small_run_config):
    trainer = SVMTrainer(small_run_config)
    _fill(trainer, separable)
    state = trainer.train()

    out = Path(small_run_config.out_dir)
    assert state is not None
    assert state.sign_correction in (1.0, -1.0)
    assert 0 in state.selector["feature_subset"]
    assert len(state.lookup) == 21
    s = state.sigmoid
    assert 0.0 <= s.thresh_lo < s.thresh_hi <= 1.0 and s.scale > 0

    assert state_path(out, "demo").exists()
    assert model_path(out, "demo").exists()
    assert (out / "demo-allResults.tsv").exists()
    assert (out / "nu-LoHiSteps").exists()
    assert len((out / "demo-features.tsv").read_text().splitlines()) == 240
    assert "Training from 120 positive and 120 negative examples" in state.training_details

    clf = SVMClassifier.load(out, "demo")
    assert clf.classify([4.0, 0.0, 0.0]) > 0 > clf.classify([-4.0, 0.0, 0.0])


def test_insufficient_data_saves_nothing(separable, small_run_config):
    trainer = SVMTrainer(small_run_config)
    for row in separable.neg[:30]:
        trainer.add_training_feature(row, False)
    for row in separable.pos[:19]:
        trainer.add_training_feature(row, True)
    assert trainer.train() is None
    assert not state_path(small_run_config.out_dir, "demo").exists()


def test_boosting_only_when_cascade_empties_a_class(small_run_config):
    rng = np.random.default_rng(2)
    cfg = small_run_config
    cfg.training.use_boosting = True
    trainer = SVMTrainer(cfg)
    for v in rng.uniform(0.0, 1.0, size=400):
        trainer.add_training_feature([v, rng.normal()], False)
    for v in rng.uniform(2.0, 3.0, size=40):
        trainer.add_training_feature([v, rng.normal()], True)
    state = trainer.train()
    assert state.sign_correction == 0.0
    assert len(state.booster_states) == 1
    assert not model_path(cfg.out_dir, "demo").exists()
    clf = SVMClassifier.load(cfg.out_dir, "demo")
    assert clf.classify([2.5, 0.0]) == 1.0
    assert clf.classify([0.5, 0.0]) == -1.0


def test_config_validation(tmp_path):
    p = tmp_path / "cfg.yaml"
    p.write_text(yaml.safe_dump({"training": {"neg_relative_weight": 0}}))
    with pytest.raises(ConfigError):
        load_config(str(p))
    p.write_text(yaml.safe_dump({"hyperparams": {"nu": {"lo": 0.4, "hi": 0.1, "steps": 3}}}))
    with pytest.raises(ConfigError):
        load_config(str(p))
    p.write_text("")
    rc = build_run_config(load_config(str(p)))
    assert rc.training.k_folds == 6
    assert rc.training.hyperparams_to_keep == 6
    assert rc.training.use_boosting is False
    assert rc.boosting.min_neg_removed == 150


def _cli_config(tmp_path, out_dir):
    cfg = {
        "io": {"out_dir": str(out_dir), "label": "cli", "progress": False, "dump_features": True},
        "training": {"feature_selection": "none", "k_folds": 3, "n_jobs": 1},
        "hyperparams": {"nu": {"lo": 0.1, "hi": 0.3, "steps": 2}, "loggamma": {"lo": -1.0, "hi": 0.0, "steps": 1}},
        "calibration": {"boundary_diagnostics": False},
    }
    path = tmp_path / "cfg.yaml"
    path.write_text(yaml.safe_dump(cfg))
    return path


def test_cli_train_then_classify(separable, tmp_path):
    out = tmp_path / "cli_out"
    cfg_path = _cli_config(tmp_path, out)
    X = np.vstack([separable.neg, separable.pos])
    df = pd.DataFrame(X, columns=["f0", "f1", "f2"])
    df.insert(0, "label", [0] * 120 + [1] * 120)
    train_csv = tmp_path / "train.csv"
    df.to_csv(train_csv, index=False)

    train_main(["--config", str(cfg_path), "--mode", "train", "--features", str(train_csv)])
    assert state_path(out, "cli").exists()
    fp = json.loads((out / "run_fingerprint_train.json").read_text())
    assert fp["trained"] is True and fp["n_examples"] == 240

    dumped_X, dumped_y = read_training_table(out / "cli-features.tsv")
    assert dumped_X.shape == (240, 3) and int(dumped_y.sum()) == 120

    score_in = tmp_path / "score.csv"
    df.drop(columns=["label"]).to_csv(score_in, index=False)
    score_out = tmp_path / "scored.csv"
    classify_main(["--config", str(cfg_path), "--features", str(score_in), "--out", str(score_out)])
    scored = pd.read_csv(score_out)
    assert len(scored) == 240
    assert scored["prob"].between(0.0, 1.0).all()
    acc = ((scored["score"] > 0) == (df["label"] == 1)).mean()
    assert acc > 0.8


def test_cli_insufficient_data_exits_nonzero(tmp_path):
    out = tmp_path / "cli_out"
    cfg_path = _cli_config(tmp_path, out)
    df = pd.DataFrame({"label": [0] * 5 + [1] * 5, "f0": np.arange(10.0)})
    train_csv = tmp_path / "tiny.csv"
    df.to_csv(train_csv, index=False)
    with pytest.raises(SystemExit) as e:
        train_main(["--config", str(cfg_path), "--mode", "train", "--features", str(train_csv)])
    assert e.value.code == 1


def test_crash_report_carries_run_context(separable, tmp_path):
    out = tmp_path / "cli_out"
    cfg_path = _cli_config(tmp_path, out)
    out.mkdir()
    (out / "featureSet").write_text("7\n")
    X = np.vstack([separable.neg, separable.pos])
    df = pd.DataFrame(X, columns=["f0", "f1", "f2"])
    df.insert(0, "label", [0] * 120 + [1] * 120)
    train_csv = tmp_path / "train.csv"
    df.to_csv(train_csv, index=False)

    with pytest.raises(ConfigError):
        train_main(["--config", str(cfg_path), "--mode", "train", "--features", str(train_csv)])
    rep = json.loads((out / "crash_report.json").read_text())
    assert rep["exception"] == "ConfigError"
    assert rep["context"]["label"] == "cli"
    assert (rep["context"]["n_neg"], rep["context"]["n_pos"]) == (120, 120)
    assert "featureSet" in rep["artifacts"]
