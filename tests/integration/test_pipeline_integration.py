"""
End-to-end tests for the deep-report pipeline with a scripted research worker.

No network access: Step 1 uses the template planner and Step 2 a fake worker.
"""
import asyncio

import pytest

from deep_report.config import PipelineSettings
from deep_report.errors import InsufficientScope
from deep_report.pipeline import ResearchPipeline, run_research
from deep_report.step1 import TemplateSubtopicPlanner
from deep_report.step3 import ConfidenceLevel

QUERY = "Raft consensus"


def _claim(text, *sources):
    return {
        "claim": text,
        "evidence": f"Evidence for: {text}",
        "sources": [{"url": url, "title": f"About {url}", "credibility": cred} for url, cred in sources],
    }


FINDINGS = {
    "Current state of raft consensus": [
        _claim("Raft is widely used in production", ("https://aws.amazon.com/raft", 4)),
    ],
    "Limitations and challenges of raft consensus": [
        _claim("Raft is widely used in production", ("https://sre.google/raft", 4)),
        _claim("Leader election latency limits write throughput", ("https://c.example/latency", 3)),
    ],
    "Practical applications of raft consensus": [
        _claim("etcd and Consul rely on Raft", ("https://etcd.io/docs", 5)),
    ],
    "Origins and evolution of raft consensus": [
        _claim("Raft was introduced by Diego Ongaro in 2014", ("https://raft.github.io/", 5)),
    ],
    "Key organizations and people behind raft consensus": [
        _claim("HashiCorp maintains a popular Go library", ("https://github.com/hashicorp/raft", 3)),
    ],
}


class ScriptedWorker:
    """Returns canned findings per subtopic; listed subtopics hang or fail instead."""

    def __init__(self, hang=(), fail=()):
        self.hang = set(hang)
        self.fail = set(fail)

    async def research(self, assignment):
        title = assignment.subtopic.title
        if title in self.hang:
            await asyncio.sleep(30)
        if title in self.fail:
            raise RuntimeError("search backend unavailable")
        return {"subtopic": title, "claims": FINDINGS[title], "gaps": [], "search_queries_used": [title]}


def _pipeline(worker, timeout=5.0):
    return ResearchPipeline(
        settings=PipelineSettings(worker_timeout=timeout),
        planner=TemplateSubtopicPlanner(),
        worker_factory=lambda: worker,
        show_progress=False,
    )


@pytest.mark.asyncio
async def test_one_timed_out_subtopic_leaves_a_gap_and_a_full_report():
    worker = ScriptedWorker(hang={"Practical applications of raft consensus"})

    result = await _pipeline(worker, timeout=0.2).run(QUERY, "medium")

    assert len(result.subtopics) == 5
    assert [d.status for d in result.documents] == ["ok", "ok", "timeout", "ok", "ok"]

    report = result.report
    assert not report.degraded
    assert any(
        "Practical applications of raft consensus" in gap and "timed out" in gap
        for gap in report.research_gaps
    )
    assert "across 4 of 5 subtopics" in report.executive_summary
    assert "etcd and Consul rely on Raft" not in [f.claim for f in report.key_findings]

    top = report.key_findings[0]
    assert top.claim == "Raft is widely used in production"
    assert top.confidence is ConfidenceLevel.HIGH
    assert len(top.citations) == 2
    assert report.confidence_statistics.total_claims == 4


@pytest.mark.asyncio
async def test_every_worker_failing_yields_degraded_report():
    worker = ScriptedWorker(fail=set(FINDINGS))

    result = await _pipeline(worker).run(QUERY, "medium")

    report = result.report
    assert report.degraded
    assert report.key_findings == ()
    assert report.detailed_analysis == ()
    assert len(report.research_gaps) == 6
    assert all("failed while fetching sources" in gap for gap in report.research_gaps[:5])
    assert report.research_gaps[-1] == "No findings were aggregated (5 of 5 subtopics failed)"
    assert "## Research Gaps" in report.to_markdown()


@pytest.mark.asyncio
async def test_insufficient_scope_stops_the_run():
    with pytest.raises(InsufficientScope):
        await _pipeline(ScriptedWorker()).run("of the", "quick")


def test_run_research_blocking_wrapper():
    result = run_research(
        QUERY,
        "quick",
        settings=PipelineSettings(worker_timeout=5.0),
        planner=TemplateSubtopicPlanner(),
        worker_factory=ScriptedWorker,
        show_progress=False,
    )

    assert result.report.depth == "quick"
    assert [st.title for st in result.subtopics] == list(FINDINGS)[:3]
    assert result.report.confidence_statistics.high.count == 1
