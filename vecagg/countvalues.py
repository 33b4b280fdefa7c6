"""The count_values aggregation operator."""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from .tables import Labels, StepVector, VectorOperator, hash_metric


def _format_float(v: float) -> str:
    """Shortest fixed-point text for ``v``; keeps -0 distinct from 0."""
    if math.isnan(v):
        return "NaN"
    if math.isinf(v):
        return "+Inf" if v > 0 else "-Inf"
    text = format(Decimal(repr(v)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _is_valid_label_name(name: str) -> bool:
    if not name:
        return False
    try:
        name.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


class CountValuesOperator(VectorOperator):
    """Counts how many series in each group hold each distinct value."""

    def __init__(
        self,
        next_op: VectorOperator,
        param: str,
        by: bool,
        grouping: Sequence[str],
        steps_batch: int = 10,
    ) -> None:
        self._next = next_op
        self._param = param
        self._by = by
        self._grouping = sorted(grouping)
        self._steps_batch = steps_batch
        self._cur_step = 0
        self._ts: List[int] = []
        self._counts: List[Dict[int, int]] = []
        self._series: List[Labels] = []
        self._initialized = False
        self._init_error: Optional[BaseException] = None

    def __str__(self) -> str:
        grouping = "[" + " ".join(self._grouping) + "]"
        kind = "by" if self._by else "without"
        return f"[countValues] {kind} ({grouping}) - param ({self._param})"

    def explain(self) -> List[VectorOperator]:
        return [self._next]

    def series(self) -> List[Labels]:
        self._ensure_initialized()
        return self._series

    def next(self) -> Optional[List[StepVector]]:
        self._ensure_initialized()
        if self._cur_step >= len(self._ts):
            return None
        batch: List[StepVector] = []
        while len(batch) < self._steps_batch and self._cur_step < len(self._ts):
            vector = StepVector(self._ts[self._cur_step])
            for output_id, count in self._counts[self._cur_step].items():
                vector.append_sample(output_id, float(count))
            batch.append(vector)
            self._cur_step += 1
        return batch

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
        if not _is_valid_label_name(self._param):
            raise ValueError(f'invalid label name "{self._param}"')

        input_to_bucket: Dict[int, int] = {}
        bucket_labels: Dict[int, Labels] = {}
        for input_id, metric in enumerate(self._next.series()):
            key, lbls = hash_metric(metric, not self._by, self._grouping)
            input_to_bucket[input_id] = key
            bucket_labels.setdefault(key, lbls)

        output_ids: Dict[Labels, int] = {}
        while True:
            batch = self._next.next()
            if batch is None:
                break
            for vector in batch:
                self._ts.append(vector.t)
                per_bucket: Dict[int, Dict[str, int]] = {}
                values: List[tuple[int, Any]] = [
                    (sid, _format_float(v))
                    for sid, v in zip(vector.sample_ids, vector.samples)
                ]
                values.extend(
                    (hid, str(h))
                    for hid, h in zip(vector.histogram_ids, vector.histograms)
                )
                for series_id, text in values:
                    counts = per_bucket.setdefault(input_to_bucket[series_id], {})
                    counts[text] = counts.get(text, 0) + 1

                step_counts: Dict[int, int] = {}
                for key, counts in per_bucket.items():
                    base = bucket_labels[key]
                    for text, count in counts.items():
                        lbls = base.set(self._param, text)
                        output_id = output_ids.get(lbls)
                        if output_id is None:
                            self._series.append(lbls)
                            output_id = len(self._series) - 1
                            output_ids[lbls] = output_id
                        step_counts[output_id] = step_counts.get(output_id, 0) + count
                self._counts.append(step_counts)