"""
Tests for the deep_report.step2 module (parallel research dispatch).
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from pydantic import ValidationError

from deep_report.errors import WorkerMalformedOutput
from deep_report.step2 import (
    AgentResearchWorker,
    Dispatcher,
    FindingsDocument,
    PageFetcher,
    ResearchAssignment,
    SourceIn,
    build_assignments,
    coerce_findings,
)


class FakeWorker:
    """
    Scripted research worker. ``behaviours`` maps a subtopic title to either a
    findings dict, an exception instance to raise, or a number of seconds to sleep.
    """

    def __init__(self, behaviours=None, default_delay=0.0):
        self.behaviours = behaviours or {}
        self.default_delay = default_delay
        self.assignments = []
        self.active = 0
        self.max_active = 0

    async def research(self, assignment: ResearchAssignment):
        self.assignments.append(assignment)
        title = assignment.subtopic.title
        behaviour = self.behaviours.get(title)

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if isinstance(behaviour, (int, float)):
                await asyncio.sleep(behaviour)
            else:
                await asyncio.sleep(self.default_delay)
            if isinstance(behaviour, Exception):
                raise behaviour
            if isinstance(behaviour, dict):
                return behaviour
            return {
                "subtopic": title,
                "claims": [{"claim": f"Finding about {title}", "evidence": "",
                            "sources": [{"url": f"https://example.org/{assignment.subtopic.id}",
                                         "title": "Example", "credibility": 3}]}],
                "gaps": [],
                "search_queries_used": [title],
            }
        finally:
            self.active -= 1


@pytest.fixture
def subtopics(create_subtopic):
    return [create_subtopic(id=i, title=f"Subtopic {i}") for i in range(1, 6)]

# -----------------------------
# Worker contract
# -----------------------------

def test_assignments_list_every_other_subtopic(subtopics):
    assignments = build_assignments(subtopics)

    assert len(assignments) == 5
    assert assignments[2].covered_topics == {"Subtopic 1", "Subtopic 2", "Subtopic 4", "Subtopic 5"}
    payload = assignments[0].to_worker_input()
    assert payload["subtopic"] == "Subtopic 1"
    assert payload["covered_topics"] == ["Subtopic 2", "Subtopic 3", "Subtopic 4", "Subtopic 5"]
    assert payload["keywords"] == ["kw1a", "kw1b", "kw1c"]


@pytest.mark.parametrize("raw,expected", [(7, 5), (0, 1), ("4", 4), (3.6, 3), (-2, 1)])
def test_source_credibility_is_clamped(raw, expected):
    assert SourceIn(url="https://a.example", credibility=raw).credibility == expected


@pytest.mark.parametrize("raw", ["high", None, True])
def test_non_numeric_credibility_is_rejected(raw):
    with pytest.raises(ValidationError):
        SourceIn(url="https://a.example", credibility=raw)


def test_blank_url_is_rejected():
    with pytest.raises(ValidationError):
        SourceIn(url="   ", credibility=3)


def test_findings_document_requires_claims():
    with pytest.raises(ValidationError):
        coerce_findings({"subtopic": "History", "gaps": []})

    document = coerce_findings({"subtopic": "History", "claims": []})
    assert document.status == "ok"
    assert not document.failed

# -----------------------------
# Dispatcher
# -----------------------------

@pytest.mark.asyncio
async def test_dispatch_returns_one_document_per_subtopic_in_order(subtopics):
    # The first worker finishes last; output order must still follow the subtopics.
    worker = FakeWorker(behaviours={"Subtopic 1": 0.05})
    dispatcher = Dispatcher(worker_factory=lambda: worker, timeout=5, show_progress=False)

    documents = await dispatcher.dispatch(subtopics)

    assert [d.subtopic for d in documents] == [st.title for st in subtopics]
    assert all(d.status == "ok" for d in documents)
    assert len(worker.assignments) == 5


@pytest.mark.asyncio
async def test_timed_out_worker_becomes_gap_and_siblings_survive(subtopics):
    worker = FakeWorker(behaviours={"Subtopic 3": 10})
    dispatcher = Dispatcher(worker_factory=lambda: worker, timeout=0.1, show_progress=False)

    documents = await dispatcher.dispatch(subtopics)

    assert [d.status for d in documents] == ["ok", "ok", "timeout", "ok", "ok"]
    failed = documents[2]
    assert failed.claims == []
    assert len(failed.gaps) == 1
    assert "Subtopic 'Subtopic 3' timed out" in failed.gaps[0]


@pytest.mark.asyncio
async def test_malformed_output_is_recovered(subtopics):
    worker = FakeWorker(behaviours={"Subtopic 2": {"subtopic": "Subtopic 2", "claims": "nothing"}})
    dispatcher = Dispatcher(worker_factory=lambda: worker, timeout=5, show_progress=False)

    documents = await dispatcher.dispatch(subtopics)

    assert documents[1].status == "malformed"
    assert "Subtopic 'Subtopic 2' returned malformed data" in documents[1].gaps[0]
    assert "claims" in documents[1].gaps[0]


@pytest.mark.asyncio
async def test_raised_worker_errors_are_classified(subtopics):
    worker = FakeWorker(behaviours={
        "Subtopic 1": WorkerMalformedOutput("wrong name", "not JSON"),
        "Subtopic 4": aiohttp.ClientConnectionError("connection reset"),
    })
    dispatcher = Dispatcher(worker_factory=lambda: worker, timeout=5, show_progress=False)

    documents = await dispatcher.dispatch(subtopics)

    assert documents[0].status == "malformed"
    assert documents[0].gaps == ["Subtopic 'Subtopic 1' returned malformed data: not JSON"]
    assert documents[3].status == "fetch_failure"
    assert "connection reset" in documents[3].gaps[0]
    assert [d.status for d in documents].count("ok") == 3


@pytest.mark.asyncio
async def test_worker_subtopic_name_is_normalised(create_subtopic):
    subtopic = create_subtopic(title="Limitations")
    worker = FakeWorker(behaviours={"Limitations": {"subtopic": "limits??", "claims": []}})
    dispatcher = Dispatcher(worker_factory=lambda: worker, timeout=5, show_progress=False)

    documents = await dispatcher.dispatch([subtopic])

    assert documents[0].subtopic == "Limitations"


@pytest.mark.asyncio
async def test_pool_size_bounds_concurrency(subtopics):
    worker = FakeWorker(default_delay=0.02)
    dispatcher = Dispatcher(worker_factory=lambda: worker, timeout=5, max_concurrency=2, show_progress=False)

    documents = await dispatcher.dispatch(subtopics)

    assert len(documents) == 5
    assert worker.max_active <= 2


@pytest.mark.asyncio
async def test_each_assignment_gets_a_fresh_worker(subtopics):
    built = []

    def factory():
        worker = FakeWorker()
        built.append(worker)
        return worker

    await Dispatcher(worker_factory=factory, timeout=5, show_progress=False).dispatch(subtopics)

    assert len(built) == 5
    assert all(len(w.assignments) == 1 for w in built)


@pytest.mark.asyncio
async def test_dispatch_with_progress_bar(subtopics):
    dispatcher = Dispatcher(worker_factory=FakeWorker, timeout=5, show_progress=True)

    documents = await dispatcher.dispatch(subtopics)

    assert len(documents) == 5


@pytest.mark.asyncio
async def test_dispatch_nothing():
    assert await Dispatcher(worker_factory=FakeWorker, show_progress=False).dispatch([]) == []


def test_failure_document_serialises():
    document = FindingsDocument(subtopic="History", claims=[], gaps=["none"], status="timeout")

    data = json.loads(document.to_json())

    assert data["status"] == "timeout"
    assert data["claims"] == []

# -----------------------------
# Agent worker and page fetcher
# -----------------------------

@pytest.mark.asyncio
async def test_agent_worker_returns_parsed_findings(create_subtopic):
    findings = {
        "subtopic": "Limitations",
        "claims": [{"claim": "Raft leaders bottleneck writes", "evidence": "Benchmarks",
                    "sources": [{"url": "https://a.example", "title": "A", "credibility": 4}]}],
        "gaps": [],
        "search_queries_used": ["raft leader bottleneck"],
    }
    mock_result = MagicMock()
    mock_result.final_output = "```json\n" + json.dumps(findings) + "\n```"
    assignment = build_assignments([create_subtopic(title="Limitations")])[0]

    with patch("deep_report.step2.Runner.run", new=AsyncMock(return_value=mock_result)) as mock_run:
        document = await AgentResearchWorker(model="gpt-4.1").research(assignment)

    mock_run.assert_awaited_once()
    assert mock_run.call_args.kwargs["max_turns"] == 10
    assert json.loads(mock_run.call_args.args[1])["subtopic"] == "Limitations"
    assert document == findings


@pytest.mark.asyncio
async def test_agent_worker_rejects_prose(mocker, create_subtopic):
    mock_result = MagicMock()
    mock_result.final_output = "Sorry, I found nothing."
    mocker.patch("deep_report.step2.Runner.run", new=AsyncMock(return_value=mock_result))
    assignment = build_assignments([create_subtopic(title="Limitations")])[0]

    with pytest.raises(WorkerMalformedOutput) as exc_info:
        await AgentResearchWorker().research(assignment)

    assert exc_info.value.kind == "malformed"
    assert exc_info.value.subtopic == "Limitations"


def test_extract_title_prefers_title_tag():
    html = "<html><head><title>  Raft\n Explained </title></head><body><h1>Other</h1></body></html>"
    assert PageFetcher.extract_title(html) == "Raft Explained"
    assert PageFetcher.extract_title("<body><h1>Heading only</h1></body>") == "Heading only"
    assert PageFetcher.extract_title("<p>no title</p>") == ""


@pytest.mark.asyncio
async def test_fill_missing_titles_fetches_each_url_once():
    document = {
        "subtopic": "History",
        "claims": [
            {"claim": "c1", "sources": [{"url": "https://a.example", "credibility": 3},
                                        {"url": "https://b.example", "title": "Kept", "credibility": 3}]},
            {"claim": "c2", "sources": [{"url": "https://a.example", "title": "", "credibility": 4}]},
        ],
    }
    fetcher = PageFetcher()
    mock_session = MagicMock()
    mock_session.__aenter__.return_value = mock_session

    with patch("deep_report.step2.aiohttp.ClientSession", return_value=mock_session), \
         patch.object(fetcher, "fetch_html", new=AsyncMock(return_value="<title>Page A</title>")) as mock_fetch:
        await fetcher.fill_missing_titles(document)

    mock_fetch.assert_awaited_once_with(mock_session, "https://a.example")
    assert document["claims"][0]["sources"][0]["title"] == "Page A"
    assert document["claims"][0]["sources"][1]["title"] == "Kept"
    assert document["claims"][1]["sources"][0]["title"] == "Page A"


@pytest.mark.asyncio
async def test_fill_missing_titles_falls_back_to_url():
    document = {"claims": [{"claim": "c", "sources": [{"url": "https://gone.example", "credibility": 2}]}]}
    fetcher = PageFetcher()
    mock_session = MagicMock()
    mock_session.__aenter__.return_value = mock_session

    with patch("deep_report.step2.aiohttp.ClientSession", return_value=mock_session), \
         patch.object(fetcher, "fetch_html", new=AsyncMock(return_value="")):
        await fetcher.fill_missing_titles(document)

    assert document["claims"][0]["sources"][0]["title"] == "https://gone.example"
