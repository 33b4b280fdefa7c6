"""Remote query engines and the endpoints that list them."""

from __future__ import annotations

import abc
from datetime import datetime, timedelta
from typing import Any, Iterable, List

from .tables import Labels


class RemoteEngine(abc.ABC):
    """A query engine reachable elsewhere, covering a time range and label sets."""

    @abc.abstractmethod
    def max_t(self) -> int:
        """Latest timestamp (ms) the engine has data for."""

    @abc.abstractmethod
    def min_t(self) -> int:
        """Earliest timestamp (ms) the engine has data for."""

    @abc.abstractmethod
    def label_sets(self) -> List[Labels]:
        """External labels, used to avoid fanning out to engines that cannot match."""

    @abc.abstractmethod
    def partition_label_sets(self) -> List[Labels]:
        """External labels forming a logical partition; a subset of label_sets."""

    @abc.abstractmethod
    def new_range_query(
        self,
        opts: Any,
        plan: Any,
        start: datetime,
        end: datetime,
        interval: timedelta,
    ) -> Any:
        """Create a range query executing ``plan`` on this engine."""


class StaticEndpoints:
    """A fixed list of remote engines."""

    def __init__(self, engines: Iterable[RemoteEngine]) -> None:
        self._engines = list(engines)

    def engines(self) -> List[RemoteEngine]:
        return self._engines