"""Ordering of instant-query results for sort functions and k-aggregations."""

from __future__ import annotations

import enum
import functools
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from .tables import Labels


class SortOrder(enum.Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass
class Sample:
    """One result sample: a float ``f`` or a histogram ``h`` at time ``t``."""

    metric: Labels
    f: float = 0.0
    h: Any = None
    t: int = 0


_CHUNK = re.compile(r"\d+|\D+")


def natural_less(a: str, b: str) -> bool:
    """Natural-order comparison: digit runs compare as numbers."""
    chunks_a = _CHUNK.findall(a)
    chunks_b = _CHUNK.findall(b)
    last_a = len(chunks_a) - 1
    last_b = len(chunks_b) - 1
    for i, ca in enumerate(chunks_a):
        if i > last_b:
            return False
        cb = chunks_b[i]
        if ca.isdigit() and cb.isdigit():
            ia, ib = int(ca), int(cb)
            if ia != ib:
                return ia < ib
        elif ca != cb:
            return ca < cb
        if i == last_a:
            return True
        if i == last_b:
            return False
    return False


def value_less(order: SortOrder, left: float, right: float) -> bool:
    """Whether ``left`` sorts before ``right``; NaN always sorts last."""
    if math.isnan(right):
        return True
    if order is SortOrder.ASC:
        return left < right
    return left > right


def filter_floats(samples: Sequence[Sample]) -> List[Sample]:
    """The float samples, histograms removed."""
    return [s for s in samples if s.h is None]


def _sorted_by(
    samples: Sequence[Sample], less: Callable[[Sample, Sample], bool]
) -> List[Sample]:
    def compare(a: Sample, b: Sample) -> int:
        ab, ba = less(a, b), less(b, a)
        if ab and not ba:
            return -1
        if ba and not ab:
            return 1
        return 0

    return sorted(samples, key=functools.cmp_to_key(compare))


@dataclass(frozen=True)
class SortFuncResultSort:
    """Order of sort() and sort_desc(): by sample value."""

    order: SortOrder = SortOrder.ASC

    def sort(self, samples: Sequence[Sample]) -> List[Sample]:
        return _sorted_by(samples, lambda a, b: value_less(self.order, a.f, b.f))

    def keep_histograms(self) -> bool:
        return False


@dataclass(frozen=True)
class SortByLabelResultSort:
    """Order of sort_by_label(): natural order of labels, then full label set."""

    sorting_labels: Tuple[str, ...] = ()
    order: SortOrder = SortOrder.ASC

    def _less(self, a: Sample, b: Sample) -> bool:
        for label in self.sorting_labels:
            left, right = a.metric.get(label), b.metric.get(label)
            if left == right:
                continue
            if natural_less(left, right):
                return self.order is SortOrder.ASC
            return self.order is SortOrder.DESC
        if a.metric < b.metric:
            return self.order is SortOrder.ASC
        return self.order is SortOrder.DESC

    def sort(self, samples: Sequence[Sample]) -> List[Sample]:
        return _sorted_by(samples, self._less)

    def keep_histograms(self) -> bool:
        return False


@dataclass(frozen=True)
class AggregateResultSort:
    """Order of topk/bottomk/limitk results: by group, then by value."""

    sorting_labels: Tuple[str, ...] = ()
    group_by: bool = True
    order: SortOrder = SortOrder.ASC

    def _group(self, metric: Labels) -> Labels:
        if self.group_by:
            return metric.keep(self.sorting_labels)
        return metric.drop(self.sorting_labels)

    def _less(self, a: Sample, b: Sample) -> bool:
        ga, gb = self._group(a.metric), self._group(b.metric)
        if ga != gb:
            return ga < gb
        return value_less(self.order, a.f, b.f)

    def sort(self, samples: Sequence[Sample]) -> List[Sample]:
        return _sorted_by(samples, self._less)

    def keep_histograms(self) -> bool:
        return True


@dataclass(frozen=True)
class NoSortResultSort:
    """Keeps results in the order they were produced."""

    _unused: Tuple[()] = field(default=(), repr=False)

    def sort(self, samples: Sequence[Sample]) -> List[Sample]:
        return list(samples)

    def keep_histograms(self) -> bool:
        return True


ResultSort = Union[
    SortFuncResultSort, SortByLabelResultSort, AggregateResultSort, NoSortResultSort
]


def result_sort_for_call(name: str, args: Sequence[Any]) -> ResultSort:
    """The result order of a top-level function call; labels are ``args[1:]``."""
    if name == "sort":
        return SortFuncResultSort(SortOrder.ASC)
    if name == "sort_desc":
        return SortFuncResultSort(SortOrder.DESC)
    if name in ("sort_by_label", "sort_by_label_desc"):
        order = SortOrder.ASC if name == "sort_by_label" else SortOrder.DESC
        return SortByLabelResultSort(tuple(str(a) for a in args[1:]), order)
    return NoSortResultSort()


def result_sort_for_aggregation(
    op: str, grouping: Sequence[str], without: bool
) -> ResultSort:
    """The result order of a top-level aggregation."""
    orders: dict[str, Optional[SortOrder]] = {
        "topk": SortOrder.DESC,
        "bottomk": SortOrder.ASC,
        "limitk": SortOrder.ASC,
        "limit_ratio": SortOrder.ASC,
    }
    order = orders.get(op)
    if order is None:
        return NoSortResultSort()
    return AggregateResultSort(tuple(grouping), not without, order)