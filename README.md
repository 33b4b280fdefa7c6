# vecagg

`vecagg` is the aggregation core of a vectorised time-series query engine.
Data moves between operators in batches of *step vectors*. A `StepVector`
carries one timestamp `t`, float samples and histogram samples, and every
sample is tagged with the id of the series it belongs to. Operators derive
from `VectorOperator` and expose `series()`, `next()` and `explain()`:
`series()` returns the label sets of the output series, indexed by id, and
`next()` returns the next batch of step vectors, or `None` when there are
no more.

The package has no dependencies outside the standard library.

## Modules

| Module | Contents |
| --- | --- |
| `vecagg.accumulator` | Per-group accumulators `SumAcc`, `MaxAcc`, `MinAcc`, `GroupAcc`, `CountAcc`, `AvgAcc`, `StdDevAcc`, `StdVarAcc`, `QuantileAcc`, `HistogramAvgAcc`; `ValueType`; `sum_compensated`, `kahan_sum_inc`, `quantile`; `add_warning` and `collect_warnings`; `IncompatibleSchemaError` and `IncompatibleBoundsError`. |
| `vecagg.tables` | `Labels`, `StepVector`, the `VectorOperator` base class, the per-step tables `ScalarTable` and `VectorTable`, `new_scalar_accumulator`, `new_vector_accumulator`, `new_scalar_tables`, `new_vectorized_tables`, `hash_metric`, `add_ratio_sample`, `histogram_sum`, `NotSupportedError`. |
| `vecagg.countvalues` | `CountValuesOperator`: for each group, counts how many series hold each distinct value. |
| `vecagg.hashaggregate` | `HashAggregate` for `sum`, `min`, `max`, `avg`, `count`, `group`, `stddev`, `stdvar`, `quantile` and `histogram_avg`, grouped `by` or `without` labels. |
| `vecagg.khashaggregate` | `KHashAggregate` for `topk`, `bottomk`, `limitk` and `limit_ratio`. |
| `vecagg.sort` | `Sample`, `SortOrder`, and the result orders `SortFuncResultSort`, `SortByLabelResultSort`, `AggregateResultSort` and `NoSortResultSort`; `result_sort_for_call`, `result_sort_for_aggregation`, `natural_less`, `value_less`, `filter_floats`. |
| `vecagg.explain` | `ExplainOutputNode`, `AnalyzeOutputNode`, `SampleStats`, `NodeKind`, `explain_vector` and `analyze_query`. |
| `vecagg.remote` | The abstract `RemoteEngine` and `StaticEndpoints`, which holds a fixed list of remote engines. |
| `vecagg.engine` | `Engine`, `Opts`, `QueryOpts`, `QueryOptions`, `Series`, `QueryType`, `ReturnType`, `collect_results`, `StepsBatchTooLargeError`, `DuplicateLabelSetError`. |

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

### Accumulators

An accumulator collects the samples of one output group at one step:

```python
from vecagg.accumulator import SumAcc

acc = SumAcc()
acc.add(1.0, None)
acc.add(2.0, None)
acc.value()       # (3.0, None)
```

`value()` returns a `(float, histogram)` pair. `value_type()` returns
`ValueType.NO_VALUE`, `SINGLE_TYPE_VALUE` or `MIXED_TYPE_VALUE`. The tables
emit nothing for a group that has a mix of floats and histograms, and record
a warning instead. `reset(arg)` clears an accumulator for the next step. For
`QuantileAcc`, `arg` is the quantile to compute.

Histograms can be any objects that have a `schema` attribute and `copy`,
`add`, `sub`, `mul`, `div` and `compact` methods. When two histograms cannot
be added, `add` raises `IncompatibleSchemaError` or
`IncompatibleBoundsError`. The sum and average accumulators turn these
errors into warnings.

### Compensated sums and quantiles

```python
from vecagg.accumulator import quantile, sum_compensated

sum_compensated([1e100, 1.0, -1e100])   # 1.0
quantile(0.5, [1.0, 2.0, 3.0, 4.0])     # 2.5
```

`quantile` sorts its list in place. It returns NaN for an empty list or a
NaN quantile, negative infinity for a quantile below 0, and positive
infinity for one above 1.

### Warnings

Some conditions are reported as warnings instead of errors. Examples are a
histogram ignored by `max`, `min`, `stddev`, `stdvar`, `quantile`, `topk` or
`bottomk`, a quantile argument outside [0, 1], and a `limit_ratio` argument
outside [-1, 1], which is capped. Warnings are recorded with `add_warning`,
and only while a `collect_warnings()` block is active. Each distinct message
is recorded once:

```python
from vecagg.accumulator import MaxAcc, collect_warnings

with collect_warnings() as warnings:
    MaxAcc().add_vector([1.0], [some_histogram])
# warnings == ["PromQL info: ignored histogram in max aggregation"]
```

### Running an aggregation

```python
from vecagg.tables import Labels, StepVector, VectorOperator
from vecagg.hashaggregate import HashAggregate
from vecagg.engine import QueryType, ReturnType, collect_results


class Source(VectorOperator):
    def __init__(self):
        self._done = False

    def series(self):
        return [Labels({"__name__": "up", "pod": "a"}),
                Labels({"__name__": "up", "pod": "b"})]

    def next(self):
        if self._done:
            return None
        self._done = True
        step = StepVector(0)
        step.append_sample(0, 1.0)
        step.append_sample(1, 2.0)
        return [step]


op = HashAggregate(Source(), None, "sum", by=True, labels=["pod"])
samples = collect_results(op, QueryType.INSTANT, 0, ReturnType.VECTOR)
# [Sample(metric={pod="a"}, f=1.0, ...), Sample(metric={pod="b"}, f=2.0, ...)]
```

`HashAggregate` raises `NotSupportedError` when the aggregation is not one
of the names listed above. For `quantile`, pass a parameter operator as the
second argument. Its first sample at each step is used as the quantile.
`KHashAggregate` always needs a parameter operator. It raises `ValueError`
for an unsupported aggregation, a NaN parameter, or a parameter that does
not fit in a signed 64-bit integer. When k is zero or negative, it emits
empty steps. `limit_ratio` emits an empty step only for a ratio of zero.

`limit_ratio` selects series by `Labels.hash()`, a stable 64-bit BLAKE2b
hash of the label pairs. The selection depends only on the label set, so
the same series are chosen on every run.

### Collecting results

`collect_results` drains an operator into a result:

- For `QueryType.RANGE`, it returns the non-empty `Series`, sorted by
  labels.
- For an instant query, it returns the series as they are for
  `ReturnType.MATRIX`. For `ReturnType.VECTOR`, it returns one `Sample` per
  non-empty series, at the evaluation timestamp. These samples are ordered
  by the given result sort, and histograms are dropped when the sort does
  not keep them. For `ReturnType.SCALAR`, it returns a single `Sample` with
  empty labels, whose value is NaN when there is no data.

If a vector or range result holds two series with the same label set,
`collect_results` raises `DuplicateLabelSetError`.

### Engine options

`Engine(Opts(...))` fills in defaults:

- a five-minute lookback delta;
- a one-hour extended lookback delta;
- half the CPU count (at least 1) for decoding concurrency.

`make_query_options(start, end, step, opts)` resolves these defaults against
a `QueryOpts`. A positive lookback delta, a true per-step-stats flag and a
non-zero decoding concurrency in the `QueryOpts` take precedence over the
engine's values. Steps are batched ten at a time. A `QueryOptions` whose
`steps_batch` is above 64 raises `StepsBatchTooLargeError`.
`selector_batch_size(opts)` returns the per-query batch size when it is
non-zero, and the engine's otherwise.

### Explain and analyze

`explain_vector(op)` builds an `ExplainOutputNode` tree from an operator's
`str()` and its `explain()` children. `analyze_query(op)` builds an
`AnalyzeOutputNode` tree from operators that have a `samples()` method
returning `SampleStats`. Children without such a method are left out.
`total_samples()`, `peak_samples()` and `total_samples_per_step()` add up
the statistics of a node and its children. An operator can set a
`node_kind` attribute to control how child counts are added:

- `NodeKind.SUBQUERY`: child totals are not added.
- `NodeKind.STEP_INVARIANT`: each child's total is added once per step.

## What the package does not do

The package does not parse query text, plan or optimise queries, read
series from storage, or send queries over a network. Input must come from
`VectorOperator` subclasses that you write. `Engine` only holds options and
resolves them; it does not run queries. `RemoteEngine` is an abstract
interface with no implementation. There is no command-line tool or server.