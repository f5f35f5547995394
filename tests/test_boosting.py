import numpy as np
import pytest

from svmgate.boosting import (
    BoostedFilters,
    BoosterState,
    apply_booster,
    build_cascade,
    find_best_booster_state,
    find_booster_state,
)
from svmgate.config import BoostingConfig
from svmgate.features import LabelledSet, VectorFeature


@pytest.fixture
def skewed():
    """200 positives / 1000 negatives in 5 dims; feature 0 of every positive is above 0.5."""
    rng = np.random.default_rng(11)
    neg = rng.normal(size=(1000, 5))
    pos = rng.normal(size=(200, 5))
    neg[:, 0] = rng.uniform(0.0, 1.0, size=1000)
    pos[:, 0] = rng.uniform(0.5, 1.0, size=200)
    return LabelledSet(neg=neg, pos=pos)


def test_single_stage_on_separating_feature(skewed):
    states, filtered = build_cascade(skewed, BoostingConfig())
    assert len(states) == 1
    st = states[0]
    assert st.feature_index == 0
    assert st.reject_above is False
    assert skewed.n_neg - filtered.n_neg >= 150
    assert filtered.n_pos == skewed.n_pos


def test_threshold_sits_between_last_negative_and_first_positive(skewed):
    prop, st = find_booster_state(skewed, 0, False, BoostingConfig())
    assert st is not None
    min_pos = skewed.pos[:, 0].min()
    below = skewed.neg[:, 0][skewed.neg[:, 0] < min_pos]
    assert st.threshold == pytest.approx(0.5 * (below.max() + min_pos))
    assert prop == pytest.approx(below.size / skewed.n_neg)


def test_noise_features_give_no_candidate(skewed):
    for idx in range(1, 5):
        for reject_above in (False, True):
            prop, st = find_booster_state(skewed, idx, reject_above, BoostingConfig())
            assert st is None and prop == 0.0


def test_bounds_are_configurable(skewed):
    strict = BoostingConfig(min_neg_removed=10_000)
    assert find_best_booster_state(skewed, strict) is None
    states, filtered = build_cascade(skewed, strict)
    assert states == [] and filtered is skewed


def test_cascade_is_monotone(skewed):
    states, _ = build_cascade(skewed, BoostingConfig())
    current = skewed
    for st in states:
        nxt = apply_booster(current, st)
        assert nxt.n_neg < current.n_neg
        assert nxt.n_pos <= current.n_pos
        current = nxt


def test_keep_rule_and_runtime_filters():
    above = BoosterState(1, 0.0, reject_above=True)
    below = BoosterState(0, 2.0, reject_above=False)
    assert above.keep_value(-1.0) and not above.keep_value(0.0)
    assert below.keep_value(3.0) and not below.keep_value(2.0)

    filters = BoostedFilters([below, above])
    assert filters.keep_candidate([3.0, -1.0])
    assert not filters.keep_candidate([1.0, -1.0])
    assert not filters.keep_candidate(VectorFeature([3.0, 1.0]))
    X = np.array([[3.0, -1.0], [1.0, -1.0], [3.0, 1.0]])
    assert filters.keep_mask(X).tolist() == [True, False, False]


def test_row_roundtrip():
    st = BoosterState(3, -0.25, True)
    assert BoosterState.from_row(st.to_row()) == st
