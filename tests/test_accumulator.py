import math
import statistics
from dataclasses import dataclass

import pytest
from hypothesis import given
from hypothesis import strategies as st

from vecagg.accumulator import (
    AvgAcc,
    CountAcc,
    GroupAcc,
    HistogramAvgAcc,
    IncompatibleSchemaError,
    MaxAcc,
    MinAcc,
    QuantileAcc,
    StdDevAcc,
    StdVarAcc,
    SumAcc,
    ValueType,
    add_warning,
    collect_warnings,
    kahan_sum_inc,
    quantile,
    sum_compensated,
)

CUSTOM = -53


@dataclass
class FakeHist:
    schema: int = 0
    count: float = 0.0
    total: float = 0.0
    compacted: bool = False

    def copy(self):
        return FakeHist(self.schema, self.count, self.total)

    def _check(self, other):
        if (self.schema == CUSTOM) != (other.schema == CUSTOM):
            raise IncompatibleSchemaError("mixed schemas")

    def add(self, other):
        self._check(other)
        self.count += other.count
        self.total += other.total
        return self

    def sub(self, other):
        self._check(other)
        self.count -= other.count
        self.total -= other.total
        return self

    def mul(self, factor):
        self.count *= factor
        self.total *= factor
        return self

    def div(self, divisor):
        self.count /= divisor
        self.total /= divisor
        return self

    def compact(self, n):
        self.compacted = True
        return self


finite = st.floats(min_value=-1e6, max_value=1e6, allow_nan=False)


def test_sum_compensated_recovers_small_term():
    assert sum_compensated([1e100, 1.0, -1e100]) == 1.0


def test_kahan_inc_resets_compensation_on_infinity():
    total, c = kahan_sum_inc(math.inf, 1.0, 5.0)
    assert total == math.inf
    assert c == 0


@given(st.lists(st.integers(min_value=-1000, max_value=1000)))
def test_sum_compensated_exact_for_integers(values):
    assert sum_compensated([float(v) for v in values]) == float(sum(values))


def test_quantile_edges():
    assert math.isnan(quantile(0.5, []))
    assert math.isnan(quantile(math.nan, [1.0]))
    assert quantile(-0.1, [1.0, 2.0]) == -math.inf
    assert quantile(1.5, [1.0, 2.0]) == math.inf


def test_quantile_median_and_extremes():
    assert quantile(0.5, [3.0, 1.0, 2.0]) == 2.0
    assert quantile(0.0, [3.0, 1.0, 2.0]) == 1.0
    assert quantile(1.0, [3.0, 1.0, 2.0]) == 3.0


@given(st.lists(finite, min_size=1), st.floats(min_value=0, max_value=1))
def test_quantile_within_bounds(points, q):
    result = quantile(q, list(points))
    assert min(points) <= result + 1e-9 * (1 + abs(result))
    assert result <= max(points) + 1e-9 * (1 + abs(result))


def test_sum_floats_and_mixed():
    acc = SumAcc()
    assert acc.value_type() is ValueType.NO_VALUE
    acc.add_vector([1.0, 2.0, 4.0], [])
    acc.add(8.0, None)
    assert acc.value() == (15.0, None)
    assert acc.value_type() is ValueType.SINGLE_TYPE_VALUE
    acc.add(0, FakeHist(count=2))
    assert acc.value_type() is ValueType.MIXED_TYPE_VALUE
    acc.reset(0)
    assert acc.value_type() is ValueType.NO_VALUE


def test_sum_histograms_compacts():
    acc = SumAcc()
    acc.add_vector([], [FakeHist(count=2, total=5), FakeHist(count=3, total=6)])
    _, h = acc.value()
    assert h.count == 5 and h.total == 11
    assert h.compacted


def test_sum_incompatible_schema_warns_and_keeps_sum():
    acc = SumAcc()
    with collect_warnings() as warns:
        acc.add(0, FakeHist(schema=0, count=2))
        acc.add(0, FakeHist(schema=CUSTOM, count=9))
    assert len(warns) == 1
    assert acc.value()[1].count == 2


def test_sum_vector_incompatible_schema_drops_histograms():
    acc = SumAcc()
    with collect_warnings() as warns:
        acc.add_vector([], [FakeHist(schema=0), FakeHist(schema=CUSTOM)])
    assert len(warns) == 1
    assert acc.value_type() is ValueType.NO_VALUE


def test_max_and_min_replace_nan():
    mx, mn = MaxAcc(), MinAcc()
    for acc in (mx, mn):
        acc.add(math.nan, None)
        acc.add(3.0, None)
    assert mx.value()[0] == 3.0
    assert mn.value()[0] == 3.0


@given(st.lists(finite, min_size=1))
def test_max_min_vectors(values):
    mx, mn = MaxAcc(), MinAcc()
    mx.add_vector(values, [])
    mn.add_vector(values, [])
    assert mx.value()[0] == max(values)
    assert mn.value()[0] == min(values)


def test_max_ignores_histograms_with_warning():
    acc = MaxAcc()
    with collect_warnings() as warns:
        acc.add_vector([], [FakeHist()])
    assert acc.value_type() is ValueType.NO_VALUE
    assert len(warns) == 1


def test_group_and_count():
    group, count = GroupAcc(), CountAcc()
    floats, hists = [5.0, 7.0], [FakeHist()]
    group.add_vector(floats, hists)
    count.add_vector(floats, hists)
    assert group.value()[0] == 1.0
    assert count.value()[0] == len(floats) + len(hists)
    count.reset(0)
    assert count.value_type() is ValueType.NO_VALUE


@given(st.lists(finite, min_size=1, max_size=50))
def test_avg_matches_mean(values):
    acc = AvgAcc()
    acc.add_vector(values, [])
    assert acc.value()[0] == pytest.approx(statistics.fmean(values), rel=1e-9, abs=1e-6)


def test_avg_survives_overflow():
    acc = AvgAcc()
    acc.add_vector([1.7e308, 1.7e308, 1.7e308], [])
    assert acc.value()[0] == pytest.approx(1.7e308)


def test_avg_keeps_infinite_mean():
    acc = AvgAcc()
    acc.add_vector([math.inf, 1.0], [])
    assert acc.value()[0] == math.inf


def test_avg_histograms_and_mixed():
    acc = AvgAcc()
    acc.add_vector([], [FakeHist(count=2), FakeHist(count=4)])
    assert acc.value()[1].count == pytest.approx(statistics.fmean([2, 4]))
    assert acc.value_type() is ValueType.SINGLE_TYPE_VALUE
    acc.add(1.0, None)
    assert acc.value_type() is ValueType.MIXED_TYPE_VALUE


def test_avg_incompatible_schema_clears_histograms():
    acc = AvgAcc()
    with collect_warnings() as warns:
        acc.add_vector([], [FakeHist(schema=0), FakeHist(schema=CUSTOM)])
    assert len(warns) == 1
    assert acc.value_type() is ValueType.NO_VALUE


@given(st.lists(finite, min_size=2, max_size=30))
def test_stdvar_and_stddev(values):
    var, dev = StdVarAcc(), StdDevAcc()
    for v in values:
        var.add(v, None)
        dev.add(v, None)
    assert var.value()[0] == pytest.approx(statistics.pvariance(values), rel=1e-6, abs=1e-3)
    assert dev.value()[0] == pytest.approx(statistics.pstdev(values), rel=1e-6, abs=1e-3)


def test_stat_single_value_and_nan():
    acc = StdDevAcc()
    acc.add(42.0, None)
    assert acc.value()[0] == 0
    acc.add(math.inf, None)
    assert math.isnan(acc.value()[0])
    acc.reset(0)
    assert acc.value_type() is ValueType.NO_VALUE


def test_quantile_acc_uses_reset_argument():
    acc = QuantileAcc()
    acc.reset(1.0)
    for v in (4.0, 9.0, 2.0):
        acc.add(v, None)
    assert acc.value()[0] == 9.0
    acc.reset(0.0)
    assert acc.value_type() is ValueType.NO_VALUE
    assert math.isnan(acc.value()[0])


def test_histogram_avg_value_type():
    acc = HistogramAvgAcc()
    acc.add(0, FakeHist(count=3))
    assert acc.value_type() is ValueType.SINGLE_TYPE_VALUE
    acc.add(1.0, None)
    assert acc.value_type() is ValueType.NO_VALUE


def test_warnings_deduplicated_and_scoped():
    with collect_warnings() as outer:
        add_warning("a")
        with collect_warnings() as inner:
            add_warning("b")
            add_warning("b")
        add_warning("a")
    assert outer == ["a"]
    assert inner == ["b"]