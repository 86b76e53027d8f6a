"""
End-to-end deep-report pipeline
===============================
query -> Step 1 (decompose) -> Step 2 (dispatch) -> Step 3 (aggregate)
      -> Step 4 (themes) -> Step 5 (report)

Only the dispatch stage runs concurrently; aggregation, theming and
composition are sequential over a single-owner registry. A report is always
produced once decomposition succeeds, even if every worker fails.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from deep_report.config import PipelineSettings, get_depth_profile
from deep_report.step1 import Decomposer, Subtopic, SubtopicPlanner, AgentSubtopicPlanner
from deep_report.step2 import Dispatcher, FindingsDocument, ResearchWorker, AgentResearchWorker
from deep_report.step3 import AggregateRegistry, Aggregator
from deep_report.step4 import Theme, ThemeOrganizer
from deep_report.step5 import Report, ReportComposer

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    subtopics: List[Subtopic]
    documents: List[FindingsDocument]
    registry: AggregateRegistry
    themes: List[Theme]
    report: Report


class ResearchPipeline:
    """
    Wires the five steps together.

    Args:
        settings: Run-wide configuration; defaults to :pymeth:`PipelineSettings.from_env`.
        planner: Subtopic planner for Step 1; defaults to the agent planner.
        worker_factory: Builds one research worker per subtopic for Step 2.
        enable_langfuse: Trace worker runs in Langfuse.
        show_progress: Show a progress bar while workers run.
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        planner: Optional[SubtopicPlanner] = None,
        worker_factory: Optional[Callable[[], ResearchWorker]] = None,
        enable_langfuse: bool = False,
        show_progress: bool = True,
    ):
        self.settings = settings or PipelineSettings.from_env()
        self.planner = planner or AgentSubtopicPlanner(model=self.settings.model)
        self.worker_factory = worker_factory or (lambda: AgentResearchWorker(model=self.settings.model))
        self.enable_langfuse = enable_langfuse
        self.show_progress = show_progress

    async def run(self, query: str, depth: str = "medium") -> PipelineResult:
        profile = get_depth_profile(depth)

        decomposer = Decomposer(planner=self.planner, max_keyword_overlap=self.settings.max_keyword_overlap)
        subtopics = await decomposer.decompose(query, profile.name)

        dispatcher = Dispatcher(
            worker_factory=self.worker_factory,
            timeout=self.settings.timeout_for(profile.name),
            max_concurrency=self.settings.max_concurrency,
            enable_langfuse=self.enable_langfuse,
            show_progress=self.show_progress,
        )
        documents = await dispatcher.dispatch(subtopics)

        aggregator = Aggregator(similarity_threshold=self.settings.claim_similarity_threshold)
        aggregator.ingest_all(documents)
        registry = aggregator.finalize()

        themes = ThemeOrganizer().organize(registry)
        report = ReportComposer(key_findings_limit=self.settings.key_findings_limit).compose(
            query, profile.name, registry, themes
        )
        return PipelineResult(
            subtopics=subtopics,
            documents=documents,
            registry=registry,
            themes=themes,
            report=report,
        )

# -----------------------------
# Public API
# -----------------------------

async def async_run_research(query: str, depth: str = "medium", **kwargs) -> PipelineResult:
    """Run the whole pipeline; ``kwargs`` are forwarded to :class:`ResearchPipeline`."""
    return await ResearchPipeline(**kwargs).run(query, depth)


def run_research(query: str, depth: str = "medium", **kwargs) -> PipelineResult:
    """
    Blocking wrapper around :pyfunc:`async_run_research`.

    Returns the coroutine instead when called from inside a running event loop.
    """
    try:
        loop = asyncio.get_running_loop()
        if loop.is_running():
            return async_run_research(query, depth, **kwargs)
    except RuntimeError:
        return asyncio.run(async_run_research(query, depth, **kwargs))
