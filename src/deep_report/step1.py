"""
Step 1 of the deep-report pipeline
==================================
Query Decomposition Layer
-------------------------
Splits one free-text research query into ``N`` subtopics (3 / 5 / 10 for the
``quick`` / ``medium`` / ``deep`` depths). Each subtopic is researched by its
own worker in Step 2, so the set must be *coverage-complete* (current state,
limitations and practical applications are always represented) and
*non-overlapping* (no two subtopics share more keywords than the configured
bound, so their searches return different results).

Highlights
~~~~~~~~~~
* **Pluggable planner** – the default ``AgentSubtopicPlanner`` asks an
  Agents-SDK planner agent; ``TemplateSubtopicPlanner`` is a deterministic
  offline alternative built from fixed research angles.
* **Validated output** – whatever the planner returns is checked by the
  ``Decomposer``. A plan that cannot satisfy the invariants raises
  ``InsufficientScope`` instead of silently emitting overlapping subtopics.

Example
-------
>>> from deep_report.step1 import decompose_query, TemplateSubtopicPlanner
>>> subtopics = decompose_query("Raft consensus", depth="quick", planner=TemplateSubtopicPlanner())
>>> [s.angle for s in subtopics]
['current state', 'limitations', 'practical applications']
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, asdict, replace
from itertools import combinations
from typing import List, Optional, Protocol, Sequence, Tuple

from agents import Agent, Runner, RunConfig

from deep_report.config import get_depth_profile, smaller_depth
from deep_report.errors import InsufficientScope
from deep_report.text import content_tokens
from deep_report.utils import extract_json_block, get_model_settings

logger = logging.getLogger(__name__)

REQUIRED_ANGLES = ("current state", "limitations", "practical applications")
MIN_KEYWORDS = 3
MAX_KEYWORDS = 5

# -----------------------------
# Data classes
# -----------------------------

@dataclass(frozen=True)
class Subtopic:
    id: int
    title: str
    keywords: Tuple[str, ...]
    angle: str
    rationale: str

    def keyword_set(self) -> frozenset:
        return frozenset(k.strip().lower() for k in self.keywords)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["keywords"] = list(self.keywords)
        return data


def subtopics_to_json(subtopics: Sequence[Subtopic]) -> str:
    return json.dumps([st.to_dict() for st in subtopics], indent=2, ensure_ascii=False)

# -----------------------------
# Planner protocol
# -----------------------------

class SubtopicPlanner(Protocol):
    """Produces candidate subtopics; the Decomposer validates them."""

    async def plan(self, query: str, count: int) -> List[Subtopic]:
        ...

# -----------------------------
# Deterministic template planner
# -----------------------------

# (angle, title template, angle-specific keywords, rationale)
RESEARCH_ANGLES: Tuple[Tuple[str, str, Tuple[str, str, str], str], ...] = (
    ("current state", "Current state of {focus}",
     ("adoption", "recent developments", "state of the art"),
     "Establishes where {focus} stands today."),
    ("limitations", "Limitations and challenges of {focus}",
     ("drawbacks", "failure modes", "criticism"),
     "Surfaces known weaknesses and open problems of {focus}."),
    ("practical applications", "Practical applications of {focus}",
     ("use cases", "deployments", "case studies"),
     "Shows how {focus} is applied in practice."),
    ("history", "Origins and evolution of {focus}",
     ("history", "origins", "milestones"),
     "Explains how {focus} came to be."),
    ("key players", "Key organizations and people behind {focus}",
     ("vendors", "research groups", "maintainers"),
     "Identifies who drives {focus}."),
    ("comparisons", "Alternatives and comparisons to {focus}",
     ("alternatives", "benchmarks", "trade-offs"),
     "Positions {focus} against competing approaches."),
    ("future outlook", "Future outlook for {focus}",
     ("roadmap", "forecasts", "emerging trends"),
     "Collects expectations about where {focus} is heading."),
    ("economics", "Costs and economics of {focus}",
     ("pricing", "total cost", "market size"),
     "Quantifies the economic side of {focus}."),
    ("regulation and ethics", "Regulation, policy and ethics of {focus}",
     ("regulation", "compliance", "ethical concerns"),
     "Covers the legal and ethical context of {focus}."),
    ("technical mechanisms", "How {focus} works technically",
     ("architecture", "algorithms", "implementation details"),
     "Explains the mechanisms underlying {focus}."),
)


class TemplateSubtopicPlanner:
    """Offline planner: one subtopic per research angle, in a fixed order."""

    async def plan(self, query: str, count: int) -> List[Subtopic]:
        terms = content_tokens(query)
        if not terms:
            raise InsufficientScope(query, str(count), "query has no searchable terms")
        if count > len(RESEARCH_ANGLES):
            raise InsufficientScope(
                query, str(count), f"only {len(RESEARCH_ANGLES)} distinct research angles are available"
            )

        focus = " ".join(terms)
        subtopics = []
        for idx, (angle, title, angle_keywords, rationale) in enumerate(RESEARCH_ANGLES[:count], 1):
            subtopics.append(Subtopic(
                id=idx,
                title=title.format(focus=focus),
                keywords=(focus,) + angle_keywords,
                angle=angle,
                rationale=rationale.format(focus=focus),
            ))
        return subtopics

# -----------------------------
# Agent-backed planner
# -----------------------------

PLANNER_INSTRUCTIONS = """
You are *Decomposer*, the planning agent of a parallel deep-research pipeline.
Split the research query into EXACTLY the requested number of subtopics. Each
subtopic is researched by an independent worker, so:

1. Subtopics must NOT overlap: their searches should return different results.
   Two subtopics may share at most one keyword.
2. Together they must cover the whole query.
3. One subtopic MUST have angle "current state", one "limitations" and one
   "practical applications". Use short lowercase angle labels for the rest.
4. Give every subtopic 3-5 search keywords and a one-sentence rationale.

Return *only* a valid JSON object of the form:

    {
        "subtopics": [
            {"title": <string>, "keywords": [<string>, ...],
             "angle": <string>, "rationale": <string>},
            ...
        ]
    }

If the query is too narrow to split without overlap, return {"subtopics": []}.
"""


class AgentSubtopicPlanner:
    """Planner backed by an Agents-SDK agent."""

    def __init__(self, model: str = "gpt-4.1", temperature: float = 0.3):
        self.model = model
        self.temperature = temperature
        self.agent = Agent(
            name="Decomposer",
            instructions=PLANNER_INSTRUCTIONS,
        )

    async def plan(self, query: str, count: int) -> List[Subtopic]:
        run_config = RunConfig(
            model=self.model,
            model_settings=get_model_settings(model_name=self.model, temperature=self.temperature),
            tracing_disabled=True,
            workflow_name="Query Decomposition",
        )
        prompt = f"Research query: {query}\nNumber of subtopics: {count}"
        result = await Runner.run(self.agent, prompt, run_config=run_config)
        return self.parse(result.final_output)

    @staticmethod
    def parse(output: str) -> List[Subtopic]:
        try:
            parsed = json.loads(extract_json_block(output))
            items = parsed["subtopics"]
            return [
                Subtopic(
                    id=idx,
                    title=str(item["title"]).strip(),
                    keywords=tuple(str(k).strip() for k in item["keywords"]),
                    angle=str(item["angle"]).strip().lower(),
                    rationale=str(item.get("rationale", "")).strip(),
                )
                for idx, item in enumerate(items, 1)
            ]
        except (ValueError, KeyError, TypeError) as e:
            raise ValueError(f"Failed to parse subtopics from planner response: {output}") from e

# -----------------------------
# Decomposer
# -----------------------------

class Decomposer:
    """
    Turns a query into a validated list of subtopics.

    Args:
        planner: Source of candidate subtopics. Defaults to ``AgentSubtopicPlanner``.
        max_keyword_overlap: Maximum number of keywords two subtopics may share.
    """

    def __init__(self, planner: Optional[SubtopicPlanner] = None, max_keyword_overlap: int = 1):
        self.planner = planner or AgentSubtopicPlanner()
        self.max_keyword_overlap = max_keyword_overlap

    async def decompose(self, query: str, depth: str = "medium") -> List[Subtopic]:
        profile = get_depth_profile(depth)
        if not query or not query.strip():
            raise InsufficientScope(query, profile.name, "query is empty", self._suggest(profile.name))

        try:
            candidates = await self.planner.plan(query.strip(), profile.subtopic_count)
        except InsufficientScope as e:
            raise InsufficientScope(query, profile.name, e.reason, self._suggest(profile.name)) from e
        except ValueError as e:
            raise InsufficientScope(
                query, profile.name, f"planner output was unusable ({e})", self._suggest(profile.name)
            ) from e

        # Ids follow plan order regardless of what the planner assigned.
        subtopics = [replace(st, id=idx) for idx, st in enumerate(candidates, 1)]
        problem = self.find_violation(subtopics, profile.subtopic_count)
        if problem:
            raise InsufficientScope(query, profile.name, problem, self._suggest(profile.name))

        logger.info(f"Decomposed query into {len(subtopics)} subtopics at depth '{profile.name}'")
        return subtopics

    def find_violation(self, subtopics: Sequence[Subtopic], count: int) -> Optional[str]:
        """Return a description of the first broken invariant, or None."""
        if len(subtopics) != count:
            return f"expected {count} subtopics, planner produced {len(subtopics)}"

        titles = [st.title.strip().lower() for st in subtopics]
        if len(set(titles)) != len(titles):
            return "subtopic titles are not unique"

        for st in subtopics:
            n = len(st.keyword_set())
            if not MIN_KEYWORDS <= n <= MAX_KEYWORDS:
                return f"subtopic '{st.title}' has {n} distinct keywords (expected {MIN_KEYWORDS}-{MAX_KEYWORDS})"

        angles = {st.angle.strip().lower() for st in subtopics}
        missing = [a for a in REQUIRED_ANGLES if a not in angles]
        if missing:
            return f"no subtopic covers: {', '.join(missing)}"

        for a, b in combinations(subtopics, 2):
            shared = a.keyword_set() & b.keyword_set()
            if len(shared) > self.max_keyword_overlap:
                return f"subtopics '{a.title}' and '{b.title}' overlap on {sorted(shared)}"
        return None

    @staticmethod
    def _suggest(depth: str) -> str:
        lower = smaller_depth(depth)
        if lower:
            return f"Try depth '{lower}' or a broader query."
        return "Try a broader query."

# -----------------------------
# Public API
# -----------------------------

async def async_decompose_query(
    query: str,
    depth: str = "medium",
    planner: Optional[SubtopicPlanner] = None,
    max_keyword_overlap: int = 1,
) -> List[Subtopic]:
    decomposer = Decomposer(planner=planner, max_keyword_overlap=max_keyword_overlap)
    return await decomposer.decompose(query, depth)


def decompose_query(
    query: str,
    depth: str = "medium",
    planner: Optional[SubtopicPlanner] = None,
    max_keyword_overlap: int = 1,
) -> List[Subtopic]:
    """
    Blocking wrapper around :pyfunc:`async_decompose_query`.

    Returns the coroutine instead when called from inside a running event loop.
    """
    try:
        loop = asyncio.get_running_loop()
        if loop.is_running():
            return async_decompose_query(query, depth, planner, max_keyword_overlap)
    except RuntimeError:
        return asyncio.run(async_decompose_query(query, depth, planner, max_keyword_overlap))
