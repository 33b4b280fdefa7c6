"""The hash-based aggregation operator (sum, avg, count, quantile, ...)."""

from __future__ import annotations

import math
from typing import List, Optional, Sequence, Union

from .accumulator import add_warning
from .tables import (
    Labels,
    NotSupportedError,
    ScalarTable,
    StepVector,
    VectorOperator,
    VectorTable,
    hash_metric,
    new_scalar_accumulator,
    new_scalar_tables,
    new_vectorized_tables,
)

_Table = Union[ScalarTable, VectorTable]


def _invalid_quantile_warning(value: float) -> str:
    return f"PromQL warning: quantile value should be between 0 and 1, got {value:g}"


class HashAggregate(VectorOperator):
    """Groups input series by a label set and aggregates every step per group."""

    def __init__(
        self,
        next_op: VectorOperator,
        param_op: Optional[VectorOperator],
        aggregation: str,
        by: bool,
        labels: Sequence[str],
        steps_batch: int = 10,
    ) -> None:
        # Fails early for aggregations that have no accumulator.
        new_scalar_accumulator(aggregation)
        self._next = next_op
        self._param_op = param_op
        self._aggregation = aggregation
        self._by = by
        self._labels = sorted(labels)
        self._steps_batch = steps_batch
        self._params: List[float] = [0.0] * steps_batch
        self._last_batch: Optional[List[StepVector]] = None
        self._tables: List[_Table] = []
        self._series: List[Labels] = []
        self._initialized = False
        self._init_error: Optional[BaseException] = None

    def __str__(self) -> str:
        grouping = "[" + " ".join(self._labels) + "]"
        kind = "by" if self._by else "without"
        return f"[aggregate] {self._aggregation} {kind} ({grouping})"

    def explain(self) -> List[VectorOperator]:
        if self._aggregation == "quantile" and self._param_op is not None:
            return [self._param_op, self._next]
        return [self._next]

    def series(self) -> List[Labels]:
        self._ensure_initialized()
        return self._series

    def next(self) -> Optional[List[StepVector]]:
        self._ensure_initialized()

        if self._param_op is not None:
            args = self._param_op.next() or []
            for i, arg in enumerate(args):
                sample = arg.samples[0]
                self._params[i] = sample
                if math.isnan(sample) or sample < 0 or sample > 1:
                    add_warning(_invalid_quantile_warning(sample))

        for table, param in zip(self._tables, self._params):
            table.reset(param)

        if self._last_batch is not None:
            self._aggregate(self._last_batch)
            self._last_batch = None

        while True:
            batch = self._next.next()
            if batch is None:
                break
            # Keep aggregating as long as batches start at the same timestamp.
            current_ts = self._tables[0].timestamp
            if current_ts is None or batch[0].t == current_ts:
                self._aggregate(batch)
                continue
            self._last_batch = batch
            break

        if self._tables[0].timestamp is None:
            return None

        result: List[StepVector] = []
        for table in self._tables:
            if table.timestamp is None:
                break
            result.append(table.to_vector())
        return result

    def _aggregate(self, batch: Sequence[StepVector]) -> None:
        for table, vector in zip(self._tables, batch):
            table.aggregate(vector)

    def _ensure_initialized(self) -> None:
        if self._init_error is not None:
            raise self._init_error
        if self._initialized:
            return
        try:
            if self._by and not self._labels:
                self._initialize_vectorized()
            else:
                self._initialize_scalar()
        except Exception as exc:
            self._init_error = exc
            raise
        self._initialized = True

    def _initialize_vectorized(self) -> None:
        # Initialise the input even though all of its labels are aggregated away.
        self._next.series()
        try:
            tables = new_vectorized_tables(self._steps_batch, self._aggregation)
        except NotSupportedError:
            self._initialize_scalar()
            return
        self._tables = list(tables)
        self._series = [Labels()]

    def _initialize_scalar(self) -> None:
        inputs = self._next.series()
        output_ids: dict[int, int] = {}
        outputs: List[Labels] = []
        input_cache: List[int] = []
        for metric in inputs:
            key, lbls = hash_metric(metric, not self._by, self._labels)
            output_id = output_ids.get(key)
            if output_id is None:
                output_id = len(outputs)
                output_ids[key] = output_id
                outputs.append(lbls)
            input_cache.append(output_id)
        self._tables = list(
            new_scalar_tables(
                self._steps_batch, input_cache, len(outputs), self._aggregation
            )
        )
        self._series = outputs