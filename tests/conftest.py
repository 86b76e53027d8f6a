"""
Common fixtures and setup for all tests.
"""
import os
import pytest

from deep_report.step1 import Subtopic

# -----------------------------
# Environment setup
# -----------------------------

@pytest.fixture(autouse=True)
def setup_test_env():
    """
    Set a dummy OPENAI_API_KEY for every test so no real API call can be made.
    """
    original_api_key = os.environ.get("OPENAI_API_KEY")
    os.environ["OPENAI_API_KEY"] = "sk-test-dummy-api-key"

    yield

    if original_api_key is not None:
        os.environ["OPENAI_API_KEY"] = original_api_key
    else:
        del os.environ["OPENAI_API_KEY"]

# -----------------------------
# Factories
# -----------------------------

@pytest.fixture
def create_subtopic():
    """
    Factory fixture to create Subtopic objects.

    Example:
        def test_something(create_subtopic):
            st = create_subtopic(id=2, title="Limitations", angle="limitations")
    """
    def _create_subtopic(id=1, title="Current state of raft", keywords=None, angle="current state", rationale=""):
        if keywords is None:
            keywords = (f"kw{id}a", f"kw{id}b", f"kw{id}c")
        return Subtopic(id=id, title=title, keywords=tuple(keywords), angle=angle, rationale=rationale)

    return _create_subtopic


@pytest.fixture
def make_source():
    """Factory for worker-contract source dicts."""
    def _make_source(url, credibility=3, title=None, relevance="", **extra):
        source = {
            "url": url,
            "title": title if title is not None else f"Title for {url}",
            "credibility": credibility,
            "relevance": relevance,
        }
        source.update(extra)
        return source

    return _make_source


@pytest.fixture
def make_document():
    """Factory for worker-contract findings documents (plain dicts)."""
    def _make_document(subtopic, claims=None, gaps=None, queries=None):
        return {
            "subtopic": subtopic,
            "claims": [
                {"claim": text, "evidence": f"Evidence for: {text}", "sources": list(sources)}
                for text, sources in (claims or [])
            ],
            "gaps": list(gaps or []),
            "search_queries_used": list(queries or []),
        }

    return _make_document
