"""The k-aggregation operator: topk, bottomk, limitk and limit_ratio."""

from __future__ import annotations

import functools
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .accumulator import _histogram_ignored, add_warning
from .tables import Labels, StepVector, VectorOperator, add_ratio_sample, hash_metric

_MAX_INT64 = 2**63 - 1
_MIN_INT64 = -(2**63)

_SUPPORTED = ("topk", "bottomk", "limitk", "limit_ratio")


def _invalid_ratio_warning(given: float, capped: float) -> str:
    return (
        "PromQL warning: ratio value should be between -1 and 1, "
        f"got {given:g}, capping to {capped:g}"
    )


@dataclass
class _Entry:
    sample_id: int = 0
    hist_id: int = 0
    total: float = 0.0
    histogram: Any = None


class _SamplesHeap:
    """A binary heap of entries ordered by ``compare``; NaN values sort first."""

    def __init__(self, compare: Optional[Callable[[float, float], bool]]) -> None:
        self.entries: List[_Entry] = []
        self.compare = compare

    def __len__(self) -> int:
        return len(self.entries)

    def _before(self, a: _Entry, b: _Entry) -> bool:
        if math.isnan(a.total):
            return True
        if self.compare is None:
            # limitk keeps insertion order and needs no ordering.
            return False
        return self.compare(a.total, b.total)

    def _less(self, i: int, j: int) -> bool:
        return self._before(self.entries[i], self.entries[j])

    def _swap(self, i: int, j: int) -> None:
        self.entries[i], self.entries[j] = self.entries[j], self.entries[i]

    def _up(self, j: int) -> None:
        while j > 0:
            parent = (j - 1) // 2
            if not self._less(j, parent):
                break
            self._swap(parent, j)
            j = parent

    def _down(self, i0: int) -> bool:
        n = len(self.entries)
        i = i0
        while True:
            j1 = 2 * i + 1
            if j1 >= n:
                break
            j = j1
            j2 = j1 + 1
            if j2 < n and self._less(j2, j1):
                j = j2
            if not self._less(j, i):
                break
            self._swap(i, j)
            i = j
        return i > i0

    def push(self, entry: _Entry) -> None:
        self.entries.append(entry)
        self._up(len(self.entries) - 1)

    def fix(self, i: int) -> None:
        if not self._down(i):
            self._up(i)

    def sort_reversed(self) -> None:
        def compare(a: _Entry, b: _Entry) -> int:
            if self._before(b, a):
                return -1
            if self._before(a, b):
                return 1
            return 0

        self.entries.sort(key=functools.cmp_to_key(compare))

    def drain_into(self, vector: StepVector) -> None:
        for e in self.entries:
            if e.histogram is None:
                vector.append_sample(e.sample_id, e.total)
            else:
                vector.append_histogram(e.hist_id, e.histogram)
        self.entries.clear()


class KHashAggregate(VectorOperator):
    """Selects k samples (or a ratio of series) per group at every step."""

    def __init__(
        self,
        next_op: VectorOperator,
        param_op: VectorOperator,
        aggregation: str,
        by: bool,
        labels: Sequence[str],
        steps_batch: int = 10,
    ) -> None:
        compare: Optional[Callable[[float, float], bool]] = None
        if aggregation == "topk":
            compare = lambda f, s: f < s  # noqa: E731
        elif aggregation == "bottomk":
            compare = lambda f, s: s < f  # noqa: E731
        elif aggregation not in _SUPPORTED:
            raise ValueError(f"Unsupported aggregate expression: {aggregation}")
        self._next = next_op
        self._param_op = param_op
        self._aggregation = aggregation
        self._by = by
        self._labels = sorted(labels)
        self._compare = compare
        self._params: List[float] = [0.0] * steps_batch
        self._series: List[Labels] = []
        self._input_to_heap: List[_SamplesHeap] = []
        self._heaps: List[_SamplesHeap] = []
        self._initialized = False
        self._init_error: Optional[BaseException] = None

    def __str__(self) -> str:
        grouping = "[" + " ".join(self._labels) + "]"
        kind = "by" if self._by else "without"
        return f"[kaggregate] {self._aggregation} {kind} ({grouping})"

    def explain(self) -> List[VectorOperator]:
        return [self._param_op, self._next]

    def series(self) -> List[Labels]:
        self._ensure_initialized()
        return self._series

    def _check_param(self, val: float) -> float:
        if self._aggregation == "limit_ratio":
            if math.isnan(val):
                raise ValueError("Ratio value is NaN")
            if val < -1.0:
                add_warning(_invalid_ratio_warning(val, -1.0))
                return -1.0
            if val > 1.0:
                add_warning(_invalid_ratio_warning(val, 1.0))
                return 1.0
            return val
        if math.isnan(val):
            raise ValueError("Parameter value is NaN")
        if val > _MAX_INT64:
            raise ValueError(f"Scalar value {val} overflows int64")
        if val < _MIN_INT64:
            raise ValueError(f"Scalar value {val} underflows int64")
        return val

    def next(self) -> Optional[List[StepVector]]:
        batch = self._next.next()
        args = self._param_op.next() or []
        for i, arg in enumerate(args):
            self._params[i] = self._check_param(arg.samples[0])

        if batch is None:
            return None

        self._ensure_initialized()

        is_ratio = self._aggregation == "limit_ratio"
        result: List[StepVector] = []
        for vector, param in zip(batch, self._params):
            # Steps with a non-positive k are empty; limit_ratio skips only zero.
            if (not is_ratio and int(param) <= 0) or (is_ratio and param == 0):
                result.append(StepVector(vector.t))
                continue
            if self._aggregation in ("topk", "bottomk") and vector.histograms:
                add_warning(_histogram_ignored(self._aggregation))
            k = 0 if is_ratio else int(param)
            ratio = param if is_ratio else 0.0
            result.append(self._aggregate(vector, k, ratio))
        return result

    def _ensure_initialized(self) -> None:
        if self._init_error is not None:
            raise self._init_error
        if self._initialized:
            return
        try:
            self._initialize()
        except Exception as exc:
            self._init_error = exc
            raise
        self._initialized = True

    def _initialize(self) -> None:
        series = self._next.series()
        heaps: Dict[int, _SamplesHeap] = {}
        for metric in series:
            key, _ = hash_metric(metric, not self._by, self._labels)
            heap = heaps.get(key)
            if heap is None:
                heap = _SamplesHeap(self._compare)
                heaps[key] = heap
                self._heaps.append(heap)
            self._input_to_heap.append(heap)
        self._series = series

    def _aggregate(self, vector: StepVector, k: int, ratio: float) -> StepVector:
        aggregation = self._aggregation
        if aggregation in ("topk", "bottomk"):
            self._select_extremes(vector, k)
        elif aggregation == "limitk":
            if vector.histogram_ids:
                self._limit_mixed(vector, k)
            else:
                self._limit_floats(vector, k)
        else:
            self._limit_ratio(vector, ratio)

        out = StepVector(vector.t)
        for heap in self._heaps:
            # The heap keeps the weakest entry on top, so present it reversed.
            if aggregation in ("topk", "bottomk"):
                heap.sort_reversed()
            heap.drain_into(out)
        return out

    def _select_extremes(self, vector: StepVector, k: int) -> None:
        for sample_id, value in zip(vector.sample_ids, vector.samples):
            heap = self._input_to_heap[sample_id]
            if len(heap) < k:
                heap.push(_Entry(sample_id=sample_id, total=value))
                continue
            top = heap.entries[0]
            assert heap.compare is not None
            if heap.compare(top.total, value) or (
                math.isnan(top.total) and not math.isnan(value)
            ):
                top.sample_id = sample_id
                top.total = value
                if k > 1:
                    heap.fix(0)

    def _limit_floats(self, vector: StepVector, k: int) -> None:
        groups_remaining = len(self._heaps)
        for sample_id, value in zip(vector.sample_ids, vector.samples):
            heap = self._input_to_heap[sample_id]
            if len(heap) < k:
                heap.push(_Entry(sample_id=sample_id, total=value))
                if len(heap) == k:
                    groups_remaining -= 1
                if groups_remaining == 0:
                    break

    def _limit_mixed(self, vector: StepVector, k: int) -> None:
        """Take the first k samples per group in increasing series-id order."""
        groups_remaining = len(self._heaps)
        sample_ids, hist_ids = vector.sample_ids, vector.histogram_ids
        si = hi = 0
        while hi < len(hist_ids) or si < len(sample_ids):
            have_sample = si < len(sample_ids)
            have_hist = hi < len(hist_ids)
            if have_sample and have_hist:
                current = min(sample_ids[si], hist_ids[hi])
            elif have_hist:
                current = hist_ids[hi]
            else:
                current = sample_ids[si]

            heap = self._input_to_heap[current]
            hist_first = have_hist and hist_ids[hi] == current
            sample_first = not hist_first and have_sample and sample_ids[si] == current
            if len(heap) < k:
                if hist_first:
                    heap.push(_Entry(hist_id=current, histogram=vector.histograms[hi]))
                    hi += 1
                elif sample_first:
                    heap.push(_Entry(sample_id=current, total=vector.samples[si]))
                    si += 1
                if len(heap) == k:
                    groups_remaining -= 1
                if groups_remaining == 0:
                    break
            elif hist_first:
                hi += 1
            elif sample_first:
                si += 1

    def _limit_ratio(self, vector: StepVector, ratio: float) -> None:
        for sample_id, value in zip(vector.sample_ids, vector.samples):
            if add_ratio_sample(ratio, self._series[sample_id]):
                self._input_to_heap[sample_id].push(
                    _Entry(sample_id=sample_id, total=value)
                )
        for hist_id, h in zip(vector.histogram_ids, vector.histograms):
            if add_ratio_sample(ratio, self._series[hist_id]):
                self._input_to_heap[hist_id].push(_Entry(hist_id=hist_id, histogram=h))