"""
Step 2 of the deep-report pipeline
==================================
Parallel Research Dispatch Layer
--------------------------------
Takes the subtopics produced by *Step 1* and fans them out to one independent
research worker each. Every worker receives a ``ResearchAssignment`` naming
its own subtopic plus the titles of all the others, so it knows what NOT to
cover, and returns a structured *findings document*.

Highlights
~~~~~~~~~~
* **Asynchronous fan-out** – all workers run concurrently behind a bounded
  pool (one slot per subtopic by default) and a single join barrier.
* **Per-worker time budget** – a worker that overruns is cancelled on its
  own; its siblings keep running.
* **Partial failure is normal** – timeouts, malformed output and fetch errors
  become empty findings documents tagged with a gap, never a crashed run.
* **Pluggable workers** – the default ``AgentResearchWorker`` uses the Agents
  SDK ``WebSearchTool``; a fake worker can be injected for unit tests.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Protocol, Sequence, Union

import aiohttp
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field, ValidationError, field_validator
from tqdm.asyncio import tqdm_asyncio

from agents import Agent, Runner, WebSearchTool, RunConfig
from deep_report.errors import WorkerError, WorkerFetchFailure, WorkerMalformedOutput, WorkerTimeout
from deep_report.step1 import Subtopic
from deep_report.utils import extract_json_block, get_model_settings

logger = logging.getLogger(__name__)

DEFAULT_WORKER_TIMEOUT = 300.0

# -----------------------------
# Worker contract
# -----------------------------

@dataclass(frozen=True)
class ResearchAssignment:
    """One subtopic plus the titles of every other subtopic in the same run."""
    subtopic: Subtopic
    covered_topics: frozenset

    def to_worker_input(self) -> Dict[str, Any]:
        return {
            "subtopic": self.subtopic.title,
            "keywords": list(self.subtopic.keywords),
            "angle": self.subtopic.angle,
            "covered_topics": sorted(self.covered_topics),
        }


def build_assignments(subtopics: Sequence[Subtopic]) -> List[ResearchAssignment]:
    titles = [st.title for st in subtopics]
    return [
        ResearchAssignment(
            subtopic=st,
            covered_topics=frozenset(t for t in titles if t != st.title),
        )
        for st in subtopics
    ]


class SourceIn(BaseModel):
    """A source as reported by a worker."""
    url: str = Field(..., min_length=1, description="Unique key of the source")
    title: str = Field("", description="Page or publication title")
    credibility: int = Field(..., description="1-5 trustworthiness rating")
    relevance: str = Field("", description="Why the source supports the claim")
    author: Optional[str] = Field(None, description="Author, when known")
    organization: Optional[str] = Field(None, description="Publishing organization, when known")
    original_url: Optional[str] = Field(None, description="Original reporting this source republishes")

    @field_validator("url")
    @classmethod
    def _strip_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("url must not be blank")
        return v

    @field_validator("credibility", mode="before")
    @classmethod
    def _clamp_credibility(cls, v: Any) -> int:
        if isinstance(v, bool):
            raise ValueError("credibility must be a number")
        try:
            value = int(float(v))
        except (TypeError, ValueError):
            raise ValueError(f"credibility must be a number, got {v!r}")
        return min(5, max(1, value))


class ClaimIn(BaseModel):
    """A claim as reported by a worker."""
    claim: str = Field(..., min_length=1)
    evidence: str = ""
    sources: List[SourceIn] = Field(default_factory=list)


class FindingsDocument(BaseModel):
    """The structured document every worker returns; failed workers get ``status != "ok"``."""
    subtopic: str
    claims: List[ClaimIn]
    gaps: List[str] = Field(default_factory=list)
    search_queries_used: List[str] = Field(default_factory=list)
    status: Literal["ok", "timeout", "malformed", "fetch_failure", "error"] = "ok"

    @property
    def failed(self) -> bool:
        return self.status != "ok"

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def for_failure(cls, error: WorkerError) -> "FindingsDocument":
        return cls(subtopic=error.subtopic, claims=[], gaps=[error.gap], status=error.kind)


WorkerOutput = Union[FindingsDocument, Mapping[str, Any]]


def coerce_findings(raw: WorkerOutput) -> FindingsDocument:
    """Validate a worker's output. Raises ``pydantic.ValidationError`` when malformed."""
    if isinstance(raw, FindingsDocument):
        return raw
    return FindingsDocument.model_validate(raw)


def describe_validation_error(error: ValidationError) -> str:
    fields = sorted({".".join(str(p) for p in err["loc"]) for err in error.errors()})
    return "invalid or missing " + ", ".join(fields[:5])

# -----------------------------
# Protocol for research workers
# -----------------------------

class ResearchWorker(Protocol):
    """
    Protocol for research workers to allow dependency injection and easier testing.

    ``research`` receives one assignment and returns a findings document
    (model instance or plain mapping in the worker-contract shape).
    """

    async def research(self, assignment: ResearchAssignment) -> WorkerOutput:
        ...

# -----------------------------
# Page fetcher (title back-fill)
# -----------------------------

class PageFetcher:
    """Fetches pages to recover titles for sources a worker reported without one."""

    def __init__(self, timeout: int = 15):
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def fetch_html(self, session: aiohttp.ClientSession, url: str) -> str:
        """Fetch HTML content from a URL; empty string when the page cannot be read."""
        try:
            async with session.get(url, timeout=self.timeout) as resp:
                resp.raise_for_status()
                return await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Could not fetch {url}: {e}")
            return ""

    @staticmethod
    def extract_title(html: str) -> str:
        soup = BeautifulSoup(html, "html.parser")
        title = soup.find("title")
        if title and title.get_text().strip():
            return " ".join(title.get_text().split())[:200]
        heading = soup.find("h1")
        return " ".join(heading.get_text().split())[:200] if heading else ""

    async def fill_missing_titles(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Set ``title`` on every source in ``document`` that lacks one, in place."""
        missing = [
            source
            for claim in document.get("claims") or []
            if isinstance(claim, dict)
            for source in claim.get("sources") or []
            if isinstance(source, dict) and source.get("url") and not source.get("title")
        ]
        if not missing:
            return document

        titles: Dict[str, str] = {}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            for source in missing:
                url = source["url"]
                if url not in titles:
                    html = await self.fetch_html(session, url)
                    titles[url] = self.extract_title(html) if html else ""
                source["title"] = titles[url] or url
        return document

# -----------------------------
# Default worker implementation
# -----------------------------

WORKER_INSTRUCTIONS = """
You are *ResearchWorker*, one of several agents researching facets of a larger
question in parallel. Research ONLY your assigned subtopic using web search.
Do NOT cover the topics listed under "covered_topics"; other workers own them.

For every factual claim you find, cite the sources that support it and rate
each source's credibility from 1 (anonymous / personal blog) to 5 (peer-reviewed
or primary official data). Record anything you could not find as a gap.

Return *only* a valid JSON object of the form:

    {
        "subtopic": <string>,
        "claims": [
            {"claim": <string>, "evidence": <string>,
             "sources": [{"url": <string>, "title": <string>,
                          "credibility": <1-5>, "relevance": <string>,
                          "author": <string or null>, "organization": <string or null>}]}
        ],
        "gaps": [<string>],
        "search_queries_used": [<string>]
    }

Do NOT wrap the JSON in markdown.
"""


class AgentResearchWorker:
    """Research worker backed by an Agents-SDK agent with ``WebSearchTool``."""

    def __init__(self, model: str = "gpt-4.1", max_turns: int = 10, fetcher: Optional[PageFetcher] = None):
        self.model = model
        self.max_turns = max_turns
        self.fetcher = fetcher or PageFetcher()
        self.agent = Agent(
            name="ResearchWorker",
            instructions=WORKER_INSTRUCTIONS,
            tools=[WebSearchTool()],
        )

    async def research(self, assignment: ResearchAssignment) -> Dict[str, Any]:
        run_config = RunConfig(
            model=self.model,
            model_settings=get_model_settings(model_name=self.model, temperature=0.2),
            tracing_disabled=True,
            workflow_name=f"Research - {assignment.subtopic.title}",
        )
        result = await Runner.run(
            self.agent,
            json.dumps(assignment.to_worker_input(), ensure_ascii=False),
            run_config=run_config,
            max_turns=self.max_turns,
        )
        try:
            document = json.loads(extract_json_block(result.final_output))
        except ValueError as e:
            raise WorkerMalformedOutput(assignment.subtopic.title, str(e)) from e
        if not isinstance(document, dict):
            raise WorkerMalformedOutput(assignment.subtopic.title, "findings are not a JSON object")
        return await self.fetcher.fill_missing_titles(document)

# -----------------------------
# Dispatcher
# -----------------------------

class Dispatcher:
    """
    Runs one research worker per subtopic and joins on all of them.

    Args:
        worker_factory: Builds a fresh worker for each assignment.
        timeout: Per-worker time budget in seconds.
        max_concurrency: Size of the worker pool; defaults to the subtopic count.
        enable_langfuse: Wrap each worker run in a Langfuse trace.
        show_progress: Display a tqdm progress bar while waiting.
    """

    def __init__(
        self,
        worker_factory: Optional[Callable[[], ResearchWorker]] = None,
        timeout: float = DEFAULT_WORKER_TIMEOUT,
        max_concurrency: Optional[int] = None,
        enable_langfuse: bool = False,
        show_progress: bool = True,
    ):
        self.worker_factory = worker_factory or AgentResearchWorker
        self.timeout = timeout
        self.max_concurrency = max_concurrency
        self.enable_langfuse = enable_langfuse
        self.show_progress = show_progress

        if enable_langfuse:
            from deep_report.langfuse_integration import setup_langfuse

            if setup_langfuse():
                logger.info("Langfuse tracing enabled for research workers")
            else:
                logger.warning("Failed to set up Langfuse tracing")

    async def run_worker(self, assignment: ResearchAssignment) -> FindingsDocument:
        """Run one worker within its budget; failures come back as gap-tagged documents."""
        title = assignment.subtopic.title
        try:
            raw = await asyncio.wait_for(self._invoke(assignment), timeout=self.timeout)
            document = coerce_findings(raw)
        except asyncio.TimeoutError:
            error: WorkerError = WorkerTimeout(title, f"exceeded the {self.timeout:g}s budget")
        except ValidationError as e:
            error = WorkerMalformedOutput(title, describe_validation_error(e))
        except WorkerError as e:
            error = e
        except Exception as e:  # noqa: BLE001 - any escaping worker error is a fetch-layer failure
            error = WorkerFetchFailure(title, f"{type(e).__name__}: {e}")
        else:
            logger.info(f"Worker for '{title}' returned {len(document.claims)} claims")
            return document.model_copy(update={"subtopic": title})

        error.subtopic = title
        logger.warning(f"Recovered worker failure ({error.kind}): {error.gap}")
        return FindingsDocument.for_failure(error)

    async def _invoke(self, assignment: ResearchAssignment) -> WorkerOutput:
        worker = self.worker_factory()
        if not self.enable_langfuse:
            return await worker.research(assignment)

        from deep_report.langfuse_integration import create_trace

        with create_trace(
            name="Research-Worker",
            session_id=f"subtopic_{assignment.subtopic.id}",
            tags=["research_worker", assignment.subtopic.angle],
        ) as span:
            if span is not None:
                span.set_attribute("input.value", json.dumps(assignment.to_worker_input()))
            output = await worker.research(assignment)
            if span is not None:
                span.set_attribute("output.value", str(output)[:2000])
            return output

    async def dispatch(self, subtopics: Sequence[Subtopic]) -> List[FindingsDocument]:
        """
        Fan every subtopic out to its own worker.

        Returns:
            One findings document per subtopic, in subtopic order.
        """
        if not subtopics:
            return []
        assignments = build_assignments(subtopics)
        sem = asyncio.Semaphore(self.max_concurrency or len(assignments))

        async def _worker(assignment: ResearchAssignment) -> FindingsDocument:
            async with sem:
                return await self.run_worker(assignment)

        coros = [_worker(a) for a in assignments]
        if self.show_progress:
            documents = await tqdm_asyncio.gather(*coros, desc="Research workers", total=len(coros))
        else:
            documents = await asyncio.gather(*coros)

        failed = sum(1 for d in documents if d.failed)
        logger.info(f"Dispatch finished: {len(documents) - failed} succeeded, {failed} failed")
        return list(documents)

# -----------------------------
# Public API
# -----------------------------

async def async_dispatch(
    subtopics: Sequence[Subtopic],
    worker_factory: Optional[Callable[[], ResearchWorker]] = None,
    timeout: float = DEFAULT_WORKER_TIMEOUT,
    max_concurrency: Optional[int] = None,
) -> List[FindingsDocument]:
    dispatcher = Dispatcher(worker_factory=worker_factory, timeout=timeout, max_concurrency=max_concurrency)
    return await dispatcher.dispatch(subtopics)


def dispatch(
    subtopics: Sequence[Subtopic],
    worker_factory: Optional[Callable[[], ResearchWorker]] = None,
    timeout: float = DEFAULT_WORKER_TIMEOUT,
    max_concurrency: Optional[int] = None,
) -> List[FindingsDocument]:
    """
    Blocking function to research every subtopic.

    Returns the coroutine instead when called from inside a running event loop.
    """
    try:
        loop = asyncio.get_running_loop()
        if loop.is_running():
            return async_dispatch(subtopics, worker_factory, timeout, max_concurrency)
    except RuntimeError:
        return asyncio.run(async_dispatch(subtopics, worker_factory, timeout, max_concurrency))
