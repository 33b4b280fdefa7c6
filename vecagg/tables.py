"""Label sets, step vectors and the per-step tables that drive aggregations."""

from __future__ import annotations

import abc
import functools
import hashlib
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    Union,
)

from .accumulator import (
    AvgAcc,
    CountAcc,
    GroupAcc,
    HistogramAvgAcc,
    MaxAcc,
    MinAcc,
    QuantileAcc,
    StdDevAcc,
    StdVarAcc,
    SumAcc,
    ValueType,
    _histogram_sum,
    add_warning,
)

METRIC_NAME = "__name__"
MIXED_FLOATS_HISTOGRAMS_WARNING = (
    "PromQL warning: encountered a mix of histograms and floats for aggregation"
)
_MAX_UINT64 = 2**64 - 1
_SEPARATOR = b"\xff"


class NotSupportedError(Exception):
    """Raised for expressions the engine cannot execute."""


@functools.total_ordering
class Labels:
    """An immutable, name-sorted set of label pairs."""

    __slots__ = ("_pairs",)

    def __init__(
        self, labels: Union[Mapping[str, str], Iterable[Tuple[str, str]]] = ()
    ) -> None:
        items = labels.items() if isinstance(labels, Mapping) else labels
        self._pairs: Tuple[Tuple[str, str], ...] = tuple(sorted(dict(items).items()))

    def get(self, name: str) -> str:
        """Value of ``name``, or the empty string when it is absent."""
        for label_name, value in self._pairs:
            if label_name == name:
                return value
        return ""

    def set(self, name: str, value: str) -> "Labels":
        """A copy with ``name`` set to ``value``; an empty value removes it."""
        merged = dict(self._pairs)
        if value == "":
            merged.pop(name, None)
        else:
            merged[name] = value
        return Labels(merged)

    def keep(self, names: Iterable[str]) -> "Labels":
        """A copy holding only the given label names."""
        wanted = set(names)
        return Labels((n, v) for n, v in self._pairs if n in wanted)

    def drop(self, names: Iterable[str]) -> "Labels":
        """A copy without the given label names."""
        unwanted = set(names)
        return Labels((n, v) for n, v in self._pairs if n not in unwanted)

    def hash(self) -> int:
        """A stable unsigned 64-bit hash of the label set."""
        digest = hashlib.blake2b(digest_size=8)
        for name, value in self._pairs:
            digest.update(name.encode("utf-8", "surrogatepass"))
            digest.update(_SEPARATOR)
            digest.update(value.encode("utf-8", "surrogatepass"))
            digest.update(_SEPARATOR)
        return int.from_bytes(digest.digest(), "big")

    def as_dict(self) -> Dict[str, str]:
        return dict(self._pairs)

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def __contains__(self, name: object) -> bool:
        return any(n == name for n, _ in self._pairs)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Labels):
            return NotImplemented
        return self._pairs == other._pairs

    def __lt__(self, other: "Labels") -> bool:
        if not isinstance(other, Labels):
            return NotImplemented
        return self._pairs < other._pairs

    def __hash__(self) -> int:
        return hash(self._pairs)

    def __repr__(self) -> str:
        body = ", ".join(f'{n}="{v}"' for n, v in self._pairs)
        return "{" + body + "}"


@dataclass
class StepVector:
    """Samples of one evaluation step, addressed by series id."""

    t: int
    sample_ids: List[int] = field(default_factory=list)
    samples: List[float] = field(default_factory=list)
    histogram_ids: List[int] = field(default_factory=list)
    histograms: List[Any] = field(default_factory=list)

    def append_sample(self, sample_id: int, value: float) -> None:
        self.sample_ids.append(sample_id)
        self.samples.append(value)

    def append_histogram(self, histogram_id: int, h: Any) -> None:
        self.histogram_ids.append(histogram_id)
        self.histograms.append(h)


class VectorOperator(abc.ABC):
    """A pull-based operator producing batches of step vectors."""

    @abc.abstractmethod
    def series(self) -> List[Labels]:
        """The label sets of the series this operator emits, indexed by id."""

    @abc.abstractmethod
    def next(self) -> Optional[List[StepVector]]:
        """The next batch of steps, or None once the operator is exhausted."""

    def explain(self) -> List["VectorOperator"]:
        """The operators this one reads from."""
        return []


_SCALAR_ACCUMULATORS: Dict[str, Type[Any]] = {
    "sum": SumAcc,
    "max": MaxAcc,
    "min": MinAcc,
    "count": CountAcc,
    "avg": AvgAcc,
    "group": GroupAcc,
    "stddev": StdDevAcc,
    "stdvar": StdVarAcc,
    "quantile": QuantileAcc,
    "histogram_avg": HistogramAvgAcc,
}

_VECTOR_ACCUMULATORS: Dict[str, Type[Any]] = {
    name: _SCALAR_ACCUMULATORS[name]
    for name in ("sum", "max", "min", "count", "avg", "group")
}


def new_scalar_accumulator(aggregation: str) -> Any:
    """A fresh per-group accumulator for the named aggregation."""
    try:
        return _SCALAR_ACCUMULATORS[aggregation]()
    except KeyError:
        raise NotSupportedError(f"unknown aggregation function {aggregation}") from None


def new_vector_accumulator(aggregation: str) -> Any:
    """A fresh accumulator that takes whole vectors at once."""
    try:
        return _VECTOR_ACCUMULATORS[aggregation]()
    except KeyError:
        raise NotSupportedError(f"unknown aggregation function {aggregation}") from None


class ScalarTable:
    """Aggregates the samples of one step into one accumulator per output group."""

    def __init__(
        self, inputs: Sequence[int], output_count: int, aggregation: str
    ) -> None:
        self.timestamp: Optional[int] = None
        self._inputs = list(inputs)
        self._accumulators = [
            new_scalar_accumulator(aggregation) for _ in range(output_count)
        ]

    def aggregate(self, vector: StepVector) -> None:
        self.timestamp = vector.t
        for sample_id, value in zip(vector.sample_ids, vector.samples):
            self._accumulators[self._inputs[sample_id]].add(value, None)
        for histogram_id, h in zip(vector.histogram_ids, vector.histograms):
            self._accumulators[self._inputs[histogram_id]].add(0.0, h)

    def to_vector(self) -> StepVector:
        result = StepVector(self.timestamp if self.timestamp is not None else 0)
        for output_id, acc in enumerate(self._accumulators):
            kind = acc.value_type()
            if kind is ValueType.NO_VALUE:
                continue
            if kind is ValueType.MIXED_TYPE_VALUE:
                add_warning(MIXED_FLOATS_HISTOGRAMS_WARNING)
                continue
            f, h = acc.value()
            if h is None:
                result.append_sample(output_id, f)
            else:
                result.append_histogram(output_id, h)
        return result

    def reset(self, arg: float = 0.0) -> None:
        for acc in self._accumulators:
            acc.reset(arg)
        self.timestamp = None


class VectorTable:
    """Aggregates a whole step into a single output series with id 0."""

    def __init__(self, accumulator: Any) -> None:
        self.timestamp: Optional[int] = None
        self._accumulator = accumulator

    def aggregate(self, vector: StepVector) -> None:
        self.timestamp = vector.t
        self._accumulator.add_vector(vector.samples, vector.histograms)

    def to_vector(self) -> StepVector:
        result = StepVector(self.timestamp if self.timestamp is not None else 0)
        kind = self._accumulator.value_type()
        if kind is ValueType.SINGLE_TYPE_VALUE:
            v, h = self._accumulator.value()
            if h is None:
                result.append_sample(0, v)
            else:
                result.append_histogram(0, h)
        elif kind is ValueType.MIXED_TYPE_VALUE:
            add_warning(MIXED_FLOATS_HISTOGRAMS_WARNING)
        return result

    def reset(self, arg: float = 0.0) -> None:
        self.timestamp = None
        self._accumulator.reset(arg)


def new_scalar_tables(
    steps_batch: int, input_cache: Sequence[int], output_count: int, aggregation: str
) -> List[ScalarTable]:
    """One scalar table per step of a batch."""
    return [
        ScalarTable(input_cache, output_count, aggregation) for _ in range(steps_batch)
    ]


def new_vectorized_tables(steps_batch: int, aggregation: str) -> List[VectorTable]:
    """One vectorised table per step; raises NotSupportedError if not vectorisable."""
    return [
        VectorTable(new_vector_accumulator(aggregation)) for _ in range(steps_batch)
    ]


def hash_metric(
    metric: Labels, without: bool, grouping: Sequence[str]
) -> Tuple[int, Labels]:
    """The group key and output labels of ``metric`` under a by/without grouping."""
    if without:
        lbls = metric.drop([METRIC_NAME, *grouping])
        return lbls.hash(), lbls
    if not grouping:
        return 0, Labels()
    lbls = metric.keep(grouping)
    return lbls.hash(), lbls


def add_ratio_sample(ratio_limit: float, series: Labels) -> bool:
    """Whether ``series`` falls inside the deterministic sample of ``ratio_limit``."""
    offset = series.hash() / float(_MAX_UINT64)
    return (ratio_limit >= 0 and offset < ratio_limit) or (
        ratio_limit < 0 and offset >= 1.0 + ratio_limit
    )


def histogram_sum(current: Any, histograms: Sequence[Any]) -> Any:
    """Add ``histograms`` onto ``current``; None with a warning if incompatible."""
    return _histogram_sum(current, histograms)