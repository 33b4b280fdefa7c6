"""Explain and analyze trees built from operator graphs."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, runtime_checkable


class NodeKind(enum.Enum):
    """The logical kind of a node, which decides how child samples roll up."""

    OTHER = "other"
    SUBQUERY = "subquery"
    STEP_INVARIANT = "step_invariant"


@dataclass
class SampleStats:
    """Sample counts recorded by one operator."""

    total_samples: int = 0
    peak_samples: int = 0
    total_samples_per_step: List[int] = field(default_factory=list)


@runtime_checkable
class ObservableOperator(Protocol):
    """An operator that reports telemetry about the samples it processed."""

    def samples(self) -> Optional[SampleStats]: ...

    def explain(self) -> List[Any]: ...


@dataclass
class ExplainOutputNode:
    """Operator name and children of an explained operator tree."""

    operator_name: str = ""
    children: List["ExplainOutputNode"] = field(default_factory=list)


class AnalyzeOutputNode:
    """Telemetry of an operator and its observable children, with rolled-up samples."""

    def __init__(
        self,
        telemetry: ObservableOperator,
        children: Optional[List["AnalyzeOutputNode"]] = None,
    ) -> None:
        self.telemetry = telemetry
        self.children: List[AnalyzeOutputNode] = list(children or [])
        self._aggregated = False
        self._total = 0
        self._peak = 0
        self._per_step: List[int] = []

    def total_samples(self) -> int:
        self._aggregate()
        return self._total

    def peak_samples(self) -> int:
        self._aggregate()
        return self._peak

    def total_samples_per_step(self) -> List[int]:
        self._aggregate()
        return self._per_step

    def _aggregate(self) -> None:
        if self._aggregated:
            return
        self._aggregated = True

        own = self.telemetry.samples()
        if own is not None:
            self._total += own.total_samples
            self._peak += own.peak_samples
            self._per_step = list(own.total_samples_per_step)

        kind = getattr(self.telemetry, "node_kind", NodeKind.OTHER)
        for child in self.children:
            self._peak = max(self._peak, child.peak_samples())
            if kind is NodeKind.SUBQUERY:
                continue
            if kind is NodeKind.STEP_INVARIANT:
                child_total = child.total_samples()
                for i in range(len(self._per_step)):
                    self._total += child_total
                    self._per_step[i] += child_total
                continue
            self._total += child.total_samples()
            child_steps = child.total_samples_per_step()
            if len(child_steps) > len(self._per_step):
                self._per_step.extend([0] * (len(child_steps) - len(self._per_step)))
            for i, s in enumerate(child_steps):
                self._per_step[i] += s


def analyze_query(operator: ObservableOperator) -> AnalyzeOutputNode:
    """Analyze tree of ``operator``; children without telemetry are left out."""
    children = [
        analyze_query(child)
        for child in operator.explain()
        if isinstance(child, ObservableOperator)
    ]
    return AnalyzeOutputNode(operator, children)


def explain_vector(operator: Any) -> ExplainOutputNode:
    """Explain tree of ``operator``, named by its string form."""
    return ExplainOutputNode(
        operator_name=str(operator),
        children=[explain_vector(child) for child in operator.explain()],
    )