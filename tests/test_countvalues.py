import pytest

from vecagg.countvalues import CountValuesOperator
from vecagg.tables import Labels, StepVector, VectorOperator


class StaticOperator(VectorOperator):
    def __init__(self, series, batches):
        self._series = series
        self._batches = list(batches)

    def series(self):
        return self._series

    def next(self):
        if not self._batches:
            return None
        return self._batches.pop(0)


def _collect(op):
    rows = []
    while True:
        batch = op.next()
        if batch is None:
            return rows
        rows.extend(batch)


def _counts(op, vector):
    series = op.series()
    return {series[i]: v for i, v in zip(vector.sample_ids, vector.samples)}


def test_counts_equal_values():
    inner = StaticOperator(
        [Labels({"pod": "a"}), Labels({"pod": "b"}), Labels({"pod": "c"})],
        [[StepVector(0, [0, 1, 2], [1.0, 1.0, 2.0])]],
    )
    op = CountValuesOperator(inner, "value", True, [])
    rows = _collect(op)
    assert len(rows) == 1
    assert _counts(op, rows[0]) == {
        Labels({"value": "1"}): 2.0,
        Labels({"value": "2"}): 1.0,
    }


def test_negative_zero_kept_apart():
    inner = StaticOperator(
        [Labels({"pod": "a"}), Labels({"pod": "b"})],
        [[StepVector(0, [0, 1], [0.0, -0.0])]],
    )
    op = CountValuesOperator(inner, "v", True, [])
    rows = _collect(op)
    assert set(_counts(op, rows[0])) == {Labels({"v": "0"}), Labels({"v": "-0"})}


def test_fixed_point_formatting():
    inner = StaticOperator([Labels({"pod": "a"})], [[StepVector(0, [0], [1e21])]])
    op = CountValuesOperator(inner, "v", True, [])
    _collect(op)
    assert op.series() == [Labels({"v": "1000000000000000000000"})]


def test_grouping_by_label():
    inner = StaticOperator(
        [Labels({"job": "x", "pod": "a"}), Labels({"job": "y", "pod": "b"})],
        [[StepVector(0, [0, 1], [5.0, 5.0])]],
    )
    op = CountValuesOperator(inner, "v", True, ["job"])
    rows = _collect(op)
    assert _counts(op, rows[0]) == {
        Labels({"job": "x", "v": "5"}): 1.0,
        Labels({"job": "y", "v": "5"}): 1.0,
    }


def test_without_drops_metric_name():
    inner = StaticOperator(
        [Labels({"__name__": "m", "job": "x", "pod": "a"})],
        [[StepVector(0, [0], [3.0])]],
    )
    op = CountValuesOperator(inner, "v", False, ["pod"])
    assert op.series() == [Labels({"job": "x", "v": "3"})]


def test_batches_respect_steps_batch():
    steps = [StepVector(t, [0], [1.0]) for t in (0, 30, 60)]
    inner = StaticOperator([Labels({"pod": "a"})], [steps])
    op = CountValuesOperator(inner, "v", True, [], steps_batch=2)
    first = op.next()
    second = op.next()
    assert [v.t for v in first] == [0, 30]
    assert [v.t for v in second] == [60]
    assert op.next() is None


def test_invalid_label_name():
    inner = StaticOperator([], [])
    op = CountValuesOperator(inner, "", True, [])
    with pytest.raises(ValueError, match="invalid label name"):
        op.series()
    with pytest.raises(ValueError):
        op.next()


def test_string_and_explain():
    inner = StaticOperator([], [])
    op = CountValuesOperator(inner, "value", True, ["pod", "job"])
    assert str(op) == "[countValues] by ([job pod]) - param (value)"
    assert op.explain() == [inner]
    without = CountValuesOperator(inner, "value", False, [])
    assert str(without) == "[countValues] without ([]) - param (value)"


def test_empty_input_yields_nothing():
    op = CountValuesOperator(StaticOperator([Labels({"a": "b"})], []), "v", True, [])
    assert op.next() is None
    assert op.series() == []