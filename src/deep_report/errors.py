"""
Error taxonomy for the deep-report pipeline.

Only :class:`InsufficientScope` is fatal to a run. Worker errors are raised
inside a single worker task and converted into gap records by the
Dispatcher; :class:`EmptyAggregate` is recorded on a degraded registry rather
than raised.
"""
from __future__ import annotations

from typing import Optional


class DeepReportError(Exception):
    """Base class for every pipeline error."""


class InsufficientScope(DeepReportError):
    """The query cannot be split into the requested number of non-overlapping subtopics."""

    def __init__(self, query: str, depth: str, reason: str, suggestion: Optional[str] = None):
        self.query = query
        self.depth = depth
        self.reason = reason
        self.suggestion = suggestion or "Try a broader query."
        super().__init__(f"Cannot decompose '{query}' at depth '{depth}': {reason}. {self.suggestion}")


class WorkerError(DeepReportError):
    """A single research worker failed; recovered locally as a gap."""

    kind = "error"

    def __init__(self, subtopic: str, detail: str = ""):
        self.subtopic = subtopic
        self.detail = detail
        super().__init__(self.gap)

    @property
    def gap(self) -> str:
        text = f"Subtopic '{self.subtopic}' {self._describe()}"
        return f"{text}: {self.detail}" if self.detail else text

    def _describe(self) -> str:
        return "failed"


class WorkerTimeout(WorkerError):
    kind = "timeout"

    def _describe(self) -> str:
        return "timed out before returning findings"


class WorkerMalformedOutput(WorkerError):
    kind = "malformed"

    def _describe(self) -> str:
        return "returned malformed data"


class WorkerFetchFailure(WorkerError):
    kind = "fetch_failure"

    def _describe(self) -> str:
        return "failed while fetching sources"


class EmptyAggregate(DeepReportError):
    """No claim survived aggregation; the report is produced in degraded form."""

    def __init__(self, failed_subtopics: int, total_subtopics: int):
        self.failed_subtopics = failed_subtopics
        self.total_subtopics = total_subtopics
        super().__init__(
            f"No findings were aggregated ({failed_subtopics} of {total_subtopics} subtopics failed)"
        )
