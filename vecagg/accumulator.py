"""Per-group accumulators for vector aggregations and their numeric helpers."""

from __future__ import annotations

import contextvars
import enum
import math
from contextlib import contextmanager
from typing import Iterator, List, Optional, Protocol, Sequence, Tuple


class IncompatibleSchemaError(ValueError):
    """Raised by histograms that mix exponential and custom bucket schemas."""


class IncompatibleBoundsError(ValueError):
    """Raised by custom-bucket histograms whose bucket bounds differ."""


class _Histogram(Protocol):
    schema: int

    def copy(self) -> "_Histogram": ...

    def add(self, other: "_Histogram") -> "_Histogram": ...

    def sub(self, other: "_Histogram") -> "_Histogram": ...

    def mul(self, factor: float) -> "_Histogram": ...

    def div(self, divisor: float) -> "_Histogram": ...

    def compact(self, max_empty_buckets: int) -> "_Histogram": ...


MIXED_SCHEMAS_WARNING = (
    "PromQL warning: vector contains a mix of histograms with exponential "
    "and custom buckets schemas"
)
INCOMPATIBLE_BOUNDS_WARNING = (
    "PromQL warning: vector contains histograms with incompatible custom buckets"
)


def _histogram_ignored(operation: str) -> str:
    return f"PromQL info: ignored histogram in {operation} aggregation"


_collector: contextvars.ContextVar[Optional[List[str]]] = contextvars.ContextVar(
    "vecagg_warnings", default=None
)


@contextmanager
def collect_warnings() -> Iterator[List[str]]:
    """Collect warnings raised inside the block into the yielded list."""
    collected: List[str] = []
    token = _collector.set(collected)
    try:
        yield collected
    finally:
        _collector.reset(token)


def add_warning(message: str) -> None:
    """Record a warning in the innermost active collector, once per message."""
    collected = _collector.get()
    if collected is not None and message not in collected:
        collected.append(message)


class ValueType(enum.IntEnum):
    NO_VALUE = 0
    SINGLE_TYPE_VALUE = 1
    MIXED_TYPE_VALUE = 2


def kahan_sum_inc(inc: float, total: float, c: float) -> Tuple[float, float]:
    """One step of Neumaier-compensated summation; returns (new_sum, new_c)."""
    t = total + inc
    if math.isinf(t):
        c = 0.0
    elif abs(total) >= abs(inc):
        c += (total - t) + inc
    else:
        c += (inc - t) + total
    return t, c


def sum_compensated(values: Sequence[float]) -> float:
    """Sum with Neumaier compensation, more accurate than a plain sum."""
    total, c = 0.0, 0.0
    for x in values:
        total, c = kahan_sum_inc(x, total, c)
    return total + c


def quantile(q: float, points: List[float]) -> float:
    """Quantile by linear interpolation; sorts ``points`` in place."""
    if not points or math.isnan(q):
        return math.nan
    if q < 0:
        return -math.inf
    if q > 1:
        return math.inf
    points.sort()
    n = float(len(points))
    rank = q * (n - 1)
    lower = max(0.0, math.floor(rank))
    upper = min(n - 1, lower + 1)
    weight = rank - math.floor(rank)
    return points[int(lower)] * (1 - weight) + points[int(upper)] * weight


def _first_max(values: Sequence[float]) -> float:
    best = values[0]
    for v in values[1:]:
        if v > best:
            best = v
    return best


def _first_min(values: Sequence[float]) -> float:
    best = values[0]
    for v in values[1:]:
        if v < best:
            best = v
    return best


def _add_ordered(total: _Histogram, h: _Histogram) -> _Histogram:
    """Add two histograms, always adding into the one with the smaller schema."""
    if h.schema >= total.schema:
        return total.add(h)
    t = h.copy()
    t.add(total)
    return t


def _histogram_sum(
    current: Optional[_Histogram], histograms: Sequence[_Histogram]
) -> Optional[_Histogram]:
    if not histograms:
        return current
    if current is None and len(histograms) == 1:
        return histograms[0].copy()
    if current is not None:
        total = current.copy()
        rest = histograms
    else:
        total = histograms[0].copy()
        rest = histograms[1:]
    for h in rest:
        try:
            total = _add_ordered(total, h)
        except IncompatibleSchemaError:
            add_warning(MIXED_SCHEMAS_WARNING)
            return None
        except IncompatibleBoundsError:
            add_warning(INCOMPATIBLE_BOUNDS_WARNING)
            return None
    return total


class SumAcc:
    """Sums floats and histograms separately."""

    def __init__(self) -> None:
        self._value = 0.0
        self._hist_sum: Optional[_Histogram] = None
        self._has_float = False

    def add_vector(
        self, floats: Sequence[float], histograms: Sequence[_Histogram]
    ) -> None:
        if floats:
            self._value += sum_compensated(floats)
            self._has_float = True
        if histograms:
            self._hist_sum = _histogram_sum(self._hist_sum, histograms)

    def add(self, v: float, h: Optional[_Histogram] = None) -> None:
        if h is None:
            self._has_float = True
            self._value += v
            return
        if self._hist_sum is None:
            self._hist_sum = h.copy()
            return
        try:
            self._hist_sum = _add_ordered(self._hist_sum, h)
        except IncompatibleSchemaError:
            add_warning(MIXED_SCHEMAS_WARNING)
        except IncompatibleBoundsError:
            add_warning(INCOMPATIBLE_BOUNDS_WARNING)

    def value(self) -> Tuple[float, Optional[_Histogram]]:
        if self._hist_sum is not None:
            self._hist_sum.compact(0)
        return self._value, self._hist_sum

    def value_type(self) -> ValueType:
        if self._has_float and self._hist_sum is not None:
            return ValueType.MIXED_TYPE_VALUE
        if self._has_float or self._hist_sum is not None:
            return ValueType.SINGLE_TYPE_VALUE
        return ValueType.NO_VALUE

    def reset(self, arg: float = 0.0) -> None:
        self._hist_sum = None
        self._has_float = False
        self._value = 0.0


class MaxAcc:
    """Largest float; histograms are ignored."""

    def __init__(self) -> None:
        self._value = 0.0
        self._has_value = False

    def add_vector(
        self, floats: Sequence[float], histograms: Sequence[_Histogram]
    ) -> None:
        if histograms:
            add_warning(_histogram_ignored("max"))
        if not floats:
            return
        self.add(floats[0], None)
        if len(floats) > 1:
            self.add(_first_max(floats[1:]), None)

    def add(self, v: float, h: Optional[_Histogram] = None) -> None:
        if h is not None:
            return
        if not self._has_value:
            self._value = v
            self._has_value = True
            return
        if self._value < v or math.isnan(self._value):
            self._value = v

    def value(self) -> Tuple[float, Optional[_Histogram]]:
        return self._value, None

    def value_type(self) -> ValueType:
        return ValueType.SINGLE_TYPE_VALUE if self._has_value else ValueType.NO_VALUE

    def reset(self, arg: float = 0.0) -> None:
        self._has_value = False
        self._value = 0.0


class MinAcc:
    """Smallest float; histograms are ignored."""

    def __init__(self) -> None:
        self._value = 0.0
        self._has_value = False

    def add_vector(
        self, floats: Sequence[float], histograms: Sequence[_Histogram]
    ) -> None:
        if histograms:
            add_warning(_histogram_ignored("min"))
        if not floats:
            return
        self.add(floats[0], None)
        if len(floats) > 1:
            self.add(_first_min(floats[1:]), None)

    def add(self, v: float, h: Optional[_Histogram] = None) -> None:
        if h is not None:
            return
        if not self._has_value:
            self._value = v
            self._has_value = True
            return
        if self._value > v or math.isnan(self._value):
            self._value = v

    def value(self) -> Tuple[float, Optional[_Histogram]]:
        return self._value, None

    def value_type(self) -> ValueType:
        return ValueType.SINGLE_TYPE_VALUE if self._has_value else ValueType.NO_VALUE

    def reset(self, arg: float = 0.0) -> None:
        self._has_value = False
        self._value = 0.0


class GroupAcc:
    """Yields 1 for any group that saw a sample."""

    def __init__(self) -> None:
        self._value = 0.0
        self._has_value = False

    def add_vector(
        self, floats: Sequence[float], histograms: Sequence[_Histogram]
    ) -> None:
        if not floats and not histograms:
            return
        self._has_value = True
        self._value = 1.0

    def add(self, v: float, h: Optional[_Histogram] = None) -> None:
        self._has_value = True
        self._value = 1.0

    def value(self) -> Tuple[float, Optional[_Histogram]]:
        return self._value, None

    def value_type(self) -> ValueType:
        return ValueType.SINGLE_TYPE_VALUE if self._has_value else ValueType.NO_VALUE

    def reset(self, arg: float = 0.0) -> None:
        self._has_value = False
        self._value = 0.0


class CountAcc:
    """Counts floats and histograms alike."""

    def __init__(self) -> None:
        self._value = 0.0
        self._has_value = False

    def add_vector(
        self, floats: Sequence[float], histograms: Sequence[_Histogram]
    ) -> None:
        if floats or histograms:
            self._has_value = True
            self._value += float(len(floats)) + float(len(histograms))

    def add(self, v: float, h: Optional[_Histogram] = None) -> None:
        self._has_value = True
        self._value += 1

    def value(self) -> Tuple[float, Optional[_Histogram]]:
        return self._value, None

    def value_type(self) -> ValueType:
        return ValueType.SINGLE_TYPE_VALUE if self._has_value else ValueType.NO_VALUE

    def reset(self, arg: float = 0.0) -> None:
        self._has_value = False
        self._value = 0.0


class AvgAcc:
    """Mean of floats (overflow-safe) and running mean of histograms."""

    def __init__(self) -> None:
        self._kahan_sum = 0.0
        self._kahan_c = 0.0
        self._avg = 0.0
        self._incremental = False
        self._count = 0
        self._has_value = False
        self._hist_sum: Optional[_Histogram] = None
        self._hist_count = 0.0

    def add(self, v: float, h: Optional[_Histogram] = None) -> None:
        if h is not None:
            self._hist_count += 1
            if self._hist_sum is None:
                self._hist_sum = h.copy()
                return
            left = h.copy().div(self._hist_count)
            right = self._hist_sum.copy().div(self._hist_count)
            to_add = left.sub(right)
            self._hist_sum = self._hist_sum.add(to_add)
            return

        self._count += 1
        if not self._has_value:
            self._has_value = True
            self._kahan_sum = v
            return

        if not self._incremental:
            new_sum, new_c = kahan_sum_inc(v, self._kahan_sum, self._kahan_c)
            if not math.isinf(new_sum):
                self._kahan_sum, self._kahan_c = new_sum, new_c
                return
            # The sum would overflow: switch to an incremental mean.
            self._incremental = True
            self._avg = self._kahan_sum / float(self._count - 1)
            self._kahan_c /= float(self._count) - 1

        if math.isinf(self._avg):
            if math.isinf(v) and (self._avg > 0) == (v > 0):
                return
            if not math.isinf(v) and not math.isnan(v):
                return
        current_mean = self._avg + self._kahan_c
        self._avg, self._kahan_c = kahan_sum_inc(
            v / self._count - current_mean / self._count,
            self._avg,
            self._kahan_c,
        )

    def add_vector(
        self, floats: Sequence[float], histograms: Sequence[_Histogram]
    ) -> None:
        for v in floats:
            self.add(v, None)
        for h in histograms:
            try:
                self.add(0.0, h)
            except IncompatibleSchemaError:
                self._hist_sum = None
                self._hist_count = 0.0
                add_warning(MIXED_SCHEMAS_WARNING)
                return
            except IncompatibleBoundsError:
                self._hist_sum = None
                self._hist_count = 0.0
                add_warning(INCOMPATIBLE_BOUNDS_WARNING)
                return

    def value(self) -> Tuple[float, Optional[_Histogram]]:
        if self._hist_sum is not None:
            self._hist_sum.compact(0)
        if self._incremental:
            return self._avg + self._kahan_c, self._hist_sum
        if self._count == 0:
            return math.nan, self._hist_sum
        return (self._kahan_sum + self._kahan_c) / self._count, self._hist_sum

    def value_type(self) -> ValueType:
        has_float = self._count > 0
        has_hist = self._hist_count > 0
        if has_float and has_hist:
            return ValueType.MIXED_TYPE_VALUE
        if has_float or has_hist:
            return ValueType.SINGLE_TYPE_VALUE
        return ValueType.NO_VALUE

    def reset(self, arg: float = 0.0) -> None:
        self._has_value = False
        self._incremental = False
        self._kahan_sum = 0.0
        self._kahan_c = 0.0
        self._count = 0
        self._hist_count = 0.0
        self._hist_sum = None


class _Welford:
    """Running mean and sum of squared deviations."""

    def __init__(self) -> None:
        self.count = 0.0
        self.mean = 0.0
        self.m2 = 0.0
        self.has_value = False

    def push(self, v: float) -> None:
        self.has_value = True
        self.count += 1
        if math.isnan(v) or math.isinf(v):
            self.m2 = math.nan
        else:
            delta = v - self.mean
            self.mean += delta / self.count
            self.m2 += delta * (v - self.mean)

    def variance(self) -> float:
        if math.isnan(self.m2):
            return math.nan
        if self.count == 1:
            return 0.0
        return self.m2 / self.count


class StdDevAcc:
    """Population standard deviation (Welford)."""

    def __init__(self) -> None:
        self._stats = _Welford()

    def add(self, v: float, h: Optional[_Histogram] = None) -> None:
        if h is not None:
            add_warning(_histogram_ignored("stddev"))
            return
        self._stats.push(v)

    def value(self) -> Tuple[float, Optional[_Histogram]]:
        variance = self._stats.variance()
        if math.isnan(variance):
            return math.nan, None
        return math.sqrt(variance), None

    def value_type(self) -> ValueType:
        if self._stats.has_value:
            return ValueType.SINGLE_TYPE_VALUE
        return ValueType.NO_VALUE

    def reset(self, arg: float = 0.0) -> None:
        self._stats = _Welford()


class StdVarAcc:
    """Population variance (Welford)."""

    def __init__(self) -> None:
        self._stats = _Welford()

    def add(self, v: float, h: Optional[_Histogram] = None) -> None:
        if h is not None:
            add_warning(_histogram_ignored("stdvar"))
            return
        self._stats.push(v)

    def value(self) -> Tuple[float, Optional[_Histogram]]:
        return self._stats.variance(), None

    def value_type(self) -> ValueType:
        if self._stats.has_value:
            return ValueType.SINGLE_TYPE_VALUE
        return ValueType.NO_VALUE

    def reset(self, arg: float = 0.0) -> None:
        self._stats = _Welford()


class QuantileAcc:
    """Quantile of the collected floats; the argument is set by ``reset``."""

    def __init__(self, arg: float = 0.0) -> None:
        self.arg = arg
        self._points: List[float] = []
        self._has_value = False

    def add(self, v: float, h: Optional[_Histogram] = None) -> None:
        if h is not None:
            add_warning(_histogram_ignored("quantile"))
            return
        self._has_value = True
        self._points.append(v)

    def value(self) -> Tuple[float, Optional[_Histogram]]:
        return quantile(self.arg, self._points), None

    def value_type(self) -> ValueType:
        return ValueType.SINGLE_TYPE_VALUE if self._has_value else ValueType.NO_VALUE

    def reset(self, arg: float = 0.0) -> None:
        self._has_value = False
        self.arg = arg
        self._points.clear()


class HistogramAvgAcc:
    """Average of histograms; any float sample voids the result."""

    def __init__(self) -> None:
        self._sum: Optional[_Histogram] = None
        self._count = 0
        self._has_float = False

    def add(self, v: float, h: Optional[_Histogram] = None) -> None:
        if h is None:
            self._has_float = True
            return
        if self._count == 0 or self._sum is None:
            self._sum = h.copy()
        self._sum = _add_ordered(self._sum, h)
        self._count += 1

    def value(self) -> Tuple[float, Optional[_Histogram]]:
        if self._sum is None or self._count == 0:
            return 0.0, None
        return 0.0, self._sum.copy().mul(1 / float(self._count))

    def value_type(self) -> ValueType:
        if self._count > 0 and not self._has_float:
            return ValueType.SINGLE_TYPE_VALUE
        return ValueType.NO_VALUE

    def reset(self, arg: float = 0.0) -> None:
        self._count = 0