"""Engine configuration and the assembly of operator output into query results."""

from __future__ import annotations

import enum
import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from .sort import NoSortResultSort, ResultSort, Sample
from .tables import Labels, VectorOperator

_log = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DELTA = timedelta(minutes=5)
DEFAULT_EXT_LOOKBACK_DELTA = timedelta(hours=1)
STEPS_BATCH = 10
MAX_STEPS_BATCH = 64


class QueryType(enum.IntEnum):
    INSTANT = 1
    RANGE = 2


class ReturnType(enum.Enum):
    """The value type an expression evaluates to."""

    SCALAR = "scalar"
    VECTOR = "vector"
    MATRIX = "matrix"
    STRING = "string"


class StepsBatchTooLargeError(ValueError):
    """The steps batch exceeds what duplicate label checks can track."""

    def __init__(self) -> None:
        super().__init__("'StepsBatch' must be less than 64")


class DuplicateLabelSetError(ValueError):
    """A result holds two series with the same label set."""

    def __init__(self) -> None:
        super().__init__("vector cannot contain metrics with the same labelset")


@dataclass
class Opts:
    """Engine-wide options; zero values select the defaults."""

    lookback_delta: timedelta = timedelta(0)
    ext_lookback_delta: timedelta = timedelta(0)
    timeout: timedelta = timedelta(0)
    logical_optimizers: List[Any] = field(default_factory=list)
    decoding_concurrency: int = 0
    selector_batch_size: int = 0
    enable_x_functions: bool = False
    enable_analysis: bool = False
    enable_per_step_stats: bool = False
    disable_duplicate_label_checks: bool = False
    no_step_subquery_interval_fn: Optional[Callable[[int], int]] = None


@dataclass
class QueryOpts:
    """Per-query overrides of engine options; zero values keep the engine's."""

    lookback_delta: timedelta = timedelta(0)
    enable_per_step_stats: bool = False
    decoding_concurrency: int = 0
    selector_batch_size: int = 0
    logical_optimizers: List[Any] = field(default_factory=list)


@dataclass
class QueryOptions:
    """The resolved options a single query executes with."""

    start: datetime
    end: datetime
    step: timedelta = timedelta(0)
    steps_batch: int = STEPS_BATCH
    lookback_delta: timedelta = DEFAULT_LOOKBACK_DELTA
    ext_lookback_delta: timedelta = DEFAULT_EXT_LOOKBACK_DELTA
    enable_per_step_stats: bool = False
    enable_analysis: bool = False
    decoding_concurrency: int = 1
    no_step_subquery_interval_fn: Optional[Callable[[timedelta], timedelta]] = None

    def __post_init__(self) -> None:
        # Duplicate label checks track steps in a 64-bit bitmap.
        if self.steps_batch > MAX_STEPS_BATCH:
            raise StepsBatchTooLargeError()


@dataclass
class Series:
    """One output series: float points and histogram points as (t, value)."""

    metric: Labels
    floats: List[Tuple[int, float]] = field(default_factory=list)
    histograms: List[Tuple[int, Any]] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.floats and not self.histograms


class Engine:
    """Holds engine defaults and resolves them against per-query options."""

    def __init__(self, opts: Optional[Opts] = None) -> None:
        opts = opts if opts is not None else Opts()
        lookback = opts.lookback_delta
        if not lookback:
            lookback = DEFAULT_LOOKBACK_DELTA
            _log.debug("lookback delta is zero, setting to default value %s", lookback)
        ext_lookback = opts.ext_lookback_delta
        if not ext_lookback:
            ext_lookback = DEFAULT_EXT_LOOKBACK_DELTA
            _log.debug(
                "external lookback delta is zero, setting to default value %s",
                ext_lookback,
            )
        concurrency = opts.decoding_concurrency
        if concurrency < 1:
            concurrency = max((os.cpu_count() or 1) // 2, 1)

        self.lookback_delta = lookback
        self.ext_lookback_delta = ext_lookback
        self.timeout = opts.timeout
        self.logical_optimizers = list(opts.logical_optimizers)
        self.decoding_concurrency = concurrency
        self.default_selector_batch_size = opts.selector_batch_size
        self.enable_x_functions = opts.enable_x_functions
        self.enable_analysis = opts.enable_analysis
        self.enable_per_step_stats = opts.enable_per_step_stats
        self.disable_duplicate_label_checks = opts.disable_duplicate_label_checks

        interval_fn = opts.no_step_subquery_interval_fn
        self._no_step_subquery_interval_fn: Optional[
            Callable[[timedelta], timedelta]
        ] = None
        if interval_fn is not None:

            def _interval(d: timedelta) -> timedelta:
                return timedelta(milliseconds=interval_fn(int(d / timedelta(milliseconds=1))))

            self._no_step_subquery_interval_fn = _interval

    def make_query_options(
        self,
        start: datetime,
        end: datetime,
        step: timedelta,
        opts: Optional[QueryOpts] = None,
    ) -> QueryOptions:
        """Resolve the options for one query from engine defaults and ``opts``."""
        res = QueryOptions(
            start=start,
            end=end,
            step=step,
            steps_batch=STEPS_BATCH,
            lookback_delta=self.lookback_delta,
            ext_lookback_delta=self.ext_lookback_delta,
            enable_per_step_stats=self.enable_per_step_stats,
            enable_analysis=self.enable_analysis,
            decoding_concurrency=self.decoding_concurrency,
            no_step_subquery_interval_fn=self._no_step_subquery_interval_fn,
        )
        if opts is None:
            return res
        if opts.lookback_delta > timedelta(0):
            res.lookback_delta = opts.lookback_delta
        if opts.enable_per_step_stats:
            res.enable_per_step_stats = True
        if opts.decoding_concurrency != 0:
            res.decoding_concurrency = opts.decoding_concurrency
        return res

    def selector_batch_size(self, opts: Optional[QueryOpts] = None) -> int:
        """The selector batch size, with a non-zero per-query value winning."""
        if opts is not None and opts.selector_batch_size != 0:
            return opts.selector_batch_size
        return self.default_selector_batch_size

    def _logical_optimizers(self, opts: Optional[QueryOpts] = None) -> List[Any]:
        if opts is not None and opts.logical_optimizers:
            return list(opts.logical_optimizers)
        return list(self.logical_optimizers)


def _has_duplicates(metrics: Sequence[Labels]) -> bool:
    seen = set()
    for metric in metrics:
        if metric in seen:
            return True
        seen.add(metric)
    return False


def collect_results(
    operator: VectorOperator,
    query_type: QueryType,
    ts: Optional[int],
    return_type: ReturnType,
    result_sort: Optional[ResultSort] = None,
) -> Union[List[Series], List[Sample], Sample]:
    """Drain ``operator`` and shape its output as a query result.

    Range queries give a label-sorted list of non-empty series. Instant queries
    give series (matrix), samples at ``ts`` (vector) or a single sample with
    empty labels (scalar).
    """
    result_series = operator.series()
    series = [Series(metric) for metric in result_series]

    while True:
        batch = operator.next()
        if batch is None:
            break
        # The operator may report no series and still produce samples.
        if not series and batch:
            series = [Series(Labels()) for _ in batch[0].samples]
        for vector in batch:
            for sid, value in zip(vector.sample_ids, vector.samples):
                series[sid].floats.append((vector.t, value))
            for hid, h in zip(vector.histogram_ids, vector.histograms):
                series[hid].histograms.append((vector.t, h))

    if query_type is QueryType.RANGE:
        matrix = sorted((s for s in series if not s.is_empty()), key=lambda s: s.metric)
        if _has_duplicates([s.metric for s in matrix]):
            raise DuplicateLabelSetError()
        return matrix

    t = ts if ts is not None else 0
    if return_type is ReturnType.MATRIX:
        return series
    if return_type is ReturnType.VECTOR:
        sorter = result_sort if result_sort is not None else NoSortResultSort()
        samples: List[Sample] = []
        for s in series:
            if s.is_empty():
                continue
            # Force the evaluation timestamp onto every point.
            if s.floats:
                samples.append(Sample(metric=s.metric, f=s.floats[0][1], t=t))
            else:
                samples.append(Sample(metric=s.metric, h=s.histograms[0][1], t=t))
        if not sorter.keep_histograms():
            samples = [x for x in samples if x.h is None]
        samples = sorter.sort(samples)
        if _has_duplicates([x.metric for x in samples]):
            raise DuplicateLabelSetError()
        return samples
    if return_type is ReturnType.SCALAR:
        v = math.nan
        if series and series[0].floats:
            v = series[0].floats[0][1]
        return Sample(metric=Labels(), f=v, t=t)
    raise ValueError(f"unexpected expression type {return_type.value!r}")