"""Tests for split normalization and its cache."""

import math

import pytest

from ablib.assignment.splits import CONTROL_KEY, SplitNormalizer, normalize_splits


class TestNormalizeSplits:
    def test_even_split(self):
        buckets = normalize_splits({"A": 0.5, "B": 0.5})
        assert [b.key for b in buckets] == ["A", "B"]
        assert buckets[0].weight == pytest.approx(0.5)
        assert buckets[0].cumulative == pytest.approx(0.5, abs=1e-9)
        assert buckets[-1].cumulative == 1.0

    def test_weights_are_relative(self):
        buckets = normalize_splits({"A": 1, "B": 3})
        assert buckets[0].weight == pytest.approx(0.25)
        assert buckets[1].weight == pytest.approx(0.75)

    def test_order_does_not_depend_on_mapping_order(self):
        a = normalize_splits({"B": 0.2, "A": 0.3, "C": 0.5})
        b = normalize_splits({"C": 0.5, "A": 0.3, "B": 0.2})
        assert a == b
        assert [s.key for s in a] == ["A", "B", "C"]

    def test_boundaries_are_monotonic_and_end_at_one(self):
        buckets = normalize_splits({f"v{i}": 1 / 3 for i in range(7)})
        cumulative = [b.cumulative for b in buckets]
        assert cumulative == sorted(cumulative)
        assert cumulative[-1] == 1.0
        assert all(c <= 1.0 for c in cumulative)

    @pytest.mark.parametrize("splits", [{}, None, {"A": 0, "B": 0}, {"A": -1}, {"A": math.nan}])
    def test_degenerate_input_falls_back_to_control(self, splits):
        buckets = normalize_splits(splits)
        assert len(buckets) == 1
        assert buckets[0].key == CONTROL_KEY
        assert buckets[0].cumulative == 1.0

    def test_invalid_weights_are_dropped(self):
        buckets = normalize_splits({"A": math.inf, "B": -0.5, "C": "oops", "D": 2})
        assert [b.key for b in buckets] == ["D"]
        assert buckets[0].weight == 1.0

    def test_zero_weight_variant_keeps_its_slot(self):
        buckets = normalize_splits({"A": 1, "B": 0})
        assert [b.key for b in buckets] == ["A", "B"]
        assert buckets[1].weight == 0.0


class TestSplitNormalizer:
    def test_caches_by_key_and_splits(self):
        normalizer = SplitNormalizer()
        first = normalizer.get("exp", {"A": 1, "B": 1})
        second = normalizer.get("exp", {"B": 1, "A": 1})
        assert first is second
        assert len(normalizer) == 1

    def test_changed_splits_get_a_new_entry(self):
        normalizer = SplitNormalizer()
        normalizer.get("exp", {"A": 1, "B": 1})
        changed = normalizer.get("exp", {"A": 1, "B": 3})
        assert changed[0].weight == pytest.approx(0.25)
        assert len(normalizer) == 2

    def test_invalidate_one_experiment(self):
        normalizer = SplitNormalizer()
        normalizer.get("one", {"A": 1})
        normalizer.get("two", {"A": 1})
        normalizer.invalidate("one")
        assert len(normalizer) == 1

    def test_invalidate_all(self):
        normalizer = SplitNormalizer()
        normalizer.get("one", {"A": 1})
        normalizer.get("two", {"A": 1})
        normalizer.invalidate()
        assert len(normalizer) == 0
