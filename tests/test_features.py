import builtins
import threading

import numpy as np
import pytest

from svmgate.errors import ConfigError, NumericalError
from svmgate.features import ExampleStore, FeatureSubsetSelector, LabelledSet, LazyFeature, VectorFeature


def _labelled():
    neg = np.array([[0.0, 5.0, 1.0], [2.0, 5.0, 3.0]])
    pos = np.array([[4.0, 5.0, 5.0], [6.0, 5.0, 7.0]])
    return LabelledSet(neg=neg, pos=pos)


def test_normalizing_coefficients_use_population_sd():
    sel = FeatureSubsetSelector()
    sel.find_normalizing_coefficients(_labelled())
    assert np.allclose(sel.mean, [3.0, 5.0, 4.0])
    sd0 = np.std([0.0, 2.0, 4.0, 6.0])
    assert sel.scale[0] == pytest.approx(1.0 / sd0)
    # constant feature keeps scale 1
    assert sel.scale[1] == 1.0


def test_select_and_normalize_follows_subset_order():
    sel = FeatureSubsetSelector()
    sel.find_normalizing_coefficients(_labelled())
    sel.set_subset([2, 0])
    out = sel.select_and_normalize([6.0, 5.0, 4.0])
    assert out[0] == pytest.approx(0.0)
    assert out[1] == pytest.approx(3.0 * sel.scale[0])
    again = sel.select_and_normalize([6.0, 5.0, 4.0])
    assert np.array_equal(out, again)


def test_rows_match_single_vectors():
    lab = _labelled()
    sel = FeatureSubsetSelector()
    sel.find_normalizing_coefficients(lab)
    sel.set_subset([0, 2])
    rows = sel.select_and_normalize_rows(lab.pos)
    for r, x in zip(rows, lab.pos):
        assert np.allclose(r, sel.select_and_normalize(x))


def test_set_subset_keeps_coefficients():
    sel = FeatureSubsetSelector()
    sel.find_normalizing_coefficients(_labelled())
    mean = sel.mean.copy()
    sel.set_subset([1])
    sel.set_subset([0, 1, 2])
    assert np.array_equal(sel.mean, mean)


def test_empty_subset_is_rejected():
    sel = FeatureSubsetSelector()
    sel.find_normalizing_coefficients(_labelled())
    with pytest.raises(ConfigError):
        sel.select_and_normalize([1.0, 2.0, 3.0])


def test_duplicate_indices_rejected():
    with pytest.raises(ConfigError):
        FeatureSubsetSelector().set_subset([1, 1])


def test_lazy_feature_computes_only_selected_indices():
    calls = []

    def compute(i):
        calls.append(i)
        return float(i)

    sel = FeatureSubsetSelector()
    sel.find_normalizing_coefficients(_labelled())
    sel.set_subset([2])
    feat = LazyFeature(compute, 3)
    sel.select_and_normalize(feat)
    sel.select_and_normalize(feat)
    assert calls == [2]


def test_lazy_feature_rejects_non_finite():
    feat = LazyFeature(lambda i: float("nan"), 2)
    with pytest.raises(NumericalError):
        feat.value(0)


def test_selector_dict_roundtrip():
    sel = FeatureSubsetSelector()
    sel.find_normalizing_coefficients(_labelled())
    sel.set_subset([2, 0])
    back = FeatureSubsetSelector.from_dict(sel.to_dict())
    x = [1.0, 2.0, 3.0]
    assert np.allclose(back.select_and_normalize(x), sel.select_and_normalize(x))


def test_example_store_concurrent_adds_and_dump(tmp_path):
    dump = tmp_path / "demo-features.tsv"
    store = ExampleStore(dump)

    def worker(label):
        for i in range(50):
            store.add_example(VectorFeature([i, i + 1.0]).entire_feature(), label)

    threads = [threading.Thread(target=worker, args=(lbl,)) for lbl in (True, False, True, False)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.counts() == (100, 100)
    snap = store.snapshot()
    assert snap.neg.shape == (100, 2)
    lines = dump.read_text().splitlines()
    assert len(lines) == 200
    assert lines[0].split("\t")[0] in ("0", "1")


def test_example_store_rejects_dimension_change():
    store = ExampleStore()
    store.add_example([1.0, 2.0], True)
    with pytest.raises(ConfigError):
        store.add_example([1.0], False)


def test_example_store_keeps_one_dump_handle(tmp_path, monkeypatch):
    dump = tmp_path / "demo-features.tsv"
    with ExampleStore(dump) as store:
        opened = []
        real_open = builtins.open
        monkeypatch.setattr(builtins, "open", lambda *a, **kw: opened.append(a) or real_open(*a, **kw))
        for i in range(10):
            store.add_example([float(i), 1.0], i % 2 == 0)
        monkeypatch.undo()
        assert opened == []
        assert len(dump.read_text().splitlines()) == 10
    store.close()
    store.add_example([0.0, 0.0], False)
    assert store.counts() == (6, 5)
    assert len(dump.read_text().splitlines()) == 10
