"""
Step 5 of the deep-report pipeline
==================================
Report Composition Layer
------------------------
Renders the themes from *Step 4* and the registry from *Step 3* into the final
``Report``: executive summary, ranked key findings, themed analysis, a source
list split into three credibility tiers, confidence statistics and research
gaps.

Citation numbers are assigned once, in the order sources appear in the tiered
source list (tier 1 first; within a tier by credibility, then URL), and every
inline ``[n]`` marker refers to that numbering. The Report is immutable and
its field names are fixed, so two runs over the same findings can be diffed.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from deep_report.step3 import AggregateRegistry, Claim, ConfidenceLevel, Source
from deep_report.step4 import Theme

logger = logging.getLogger(__name__)

TIER_LABELS = {
    1: "Tier 1 (credibility 5-4)",
    2: "Tier 2 (credibility 3)",
    3: "Tier 3 (credibility 2-1)",
}

# -----------------------------
# Schema objects
# -----------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class SourceEntry(_Frozen):
    number: int = Field(..., description="Citation number used by inline [n] markers")
    url: str
    title: str
    credibility: int
    tier: int
    relevance_notes: Tuple[str, ...] = Field(default_factory=tuple)
    related: Tuple[int, ...] = Field(default_factory=tuple, description="Citation numbers of same-domain look-alikes")


class SourceTiers(_Frozen):
    high_credibility: Tuple[SourceEntry, ...] = Field(default_factory=tuple, description="Credibility 5-4")
    moderate_credibility: Tuple[SourceEntry, ...] = Field(default_factory=tuple, description="Credibility 3")
    low_credibility: Tuple[SourceEntry, ...] = Field(default_factory=tuple, description="Credibility 2-1")

    def entries(self) -> Tuple[SourceEntry, ...]:
        return self.high_credibility + self.moderate_credibility + self.low_credibility


class KeyFinding(_Frozen):
    rank: int
    claim: str
    confidence: ConfidenceLevel
    citations: Tuple[int, ...]


class ThemeClaim(_Frozen):
    claim: str
    evidence: str
    confidence: ConfidenceLevel
    citations: Tuple[int, ...]
    subtopics: Tuple[str, ...]


class ThemeSection(_Frozen):
    title: str
    high_confidence_claims: int
    medium_confidence_claims: int
    source_count: int
    subtopics: Tuple[str, ...]
    claims: Tuple[ThemeClaim, ...]


class LevelStatistic(_Frozen):
    count: int
    percentage: float


class ConfidenceStatistics(_Frozen):
    total_claims: int
    high: LevelStatistic
    medium: LevelStatistic
    low: LevelStatistic
    average_source_credibility: float
    total_unique_sources: int


class Report(_Frozen):
    """Structured representation of the final research report."""
    query: str
    depth: str
    degraded: bool = False
    executive_summary: str
    key_findings: Tuple[KeyFinding, ...]
    detailed_analysis: Tuple[ThemeSection, ...]
    sources: SourceTiers
    confidence_statistics: ConfidenceStatistics
    research_gaps: Tuple[str, ...]

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    def to_markdown(self) -> str:
        lines = [f"# Research Report: {self.query}", ""]
        lines += ["## Executive Summary", "", self.executive_summary, ""]

        lines += ["## Key Findings", ""]
        if self.key_findings:
            for finding in self.key_findings:
                lines.append(f"{finding.rank}. {finding.confidence.marker} {finding.claim} {_markers(finding.citations)}".rstrip())
        else:
            lines.append("_No findings could be established._")
        lines.append("")

        lines += ["## Detailed Analysis", ""]
        for idx, section in enumerate(self.detailed_analysis, 1):
            lines += [f"### {idx}. {section.title}", ""]
            lines.append(
                f"_{section.high_confidence_claims} high / {section.medium_confidence_claims} medium confidence "
                f"claims from {section.source_count} sources; subtopics: {', '.join(section.subtopics)}_"
            )
            lines.append("")
            for claim in section.claims:
                lines.append(f"- {claim.confidence.marker} {claim.claim} {_markers(claim.citations)}".rstrip())
                if claim.evidence:
                    lines.append(f"  - Evidence: {claim.evidence}")
            lines.append("")

        lines += ["## Sources", ""]
        for tier, entries in enumerate(
            (self.sources.high_credibility, self.sources.moderate_credibility, self.sources.low_credibility), 1
        ):
            lines += [f"### {TIER_LABELS[tier]}", ""]
            if not entries:
                lines.append("_None._")
            for entry in entries:
                related = f" (related: {_markers(entry.related)})" if entry.related else ""
                lines.append(f"[{entry.number}] {entry.title}. {entry.url} (credibility {entry.credibility}){related}")
            lines.append("")

        stats = self.confidence_statistics
        lines += [
            "## Confidence Statistics", "",
            "| Level | Claims | Percentage |",
            "|---|---|---|",
            f"| High | {stats.high.count} | {stats.high.percentage:.1f}% |",
            f"| Medium | {stats.medium.count} | {stats.medium.percentage:.1f}% |",
            f"| Low | {stats.low.count} | {stats.low.percentage:.1f}% |",
            "",
            f"- Total claims: {stats.total_claims}",
            f"- Total unique sources: {stats.total_unique_sources}",
            f"- Average source credibility: {stats.average_source_credibility:.2f}",
            "",
        ]

        lines += ["## Research Gaps", ""]
        if self.research_gaps:
            lines += [f"- {gap}" for gap in self.research_gaps]
        else:
            lines.append("_No gaps were recorded._")
        return "\n".join(lines) + "\n"


def _markers(numbers: Sequence[int]) -> str:
    return "".join(f"[{n}]" for n in numbers)

# -----------------------------
# Composer
# -----------------------------

def assign_citation_numbers(sources: Sequence[Source]) -> Dict[str, int]:
    """Number sources in tiered-list order: tier, credibility descending, URL."""
    ordered = sorted(sources, key=lambda s: (s.tier, -s.credibility, s.url))
    return {source.url: number for number, source in enumerate(ordered, 1)}


class ReportComposer:
    """Builds the immutable ``Report`` from the registry and its themes."""

    def __init__(self, key_findings_limit: int = 10):
        self.key_findings_limit = key_findings_limit

    def compose(
        self,
        query: str,
        depth: str,
        registry: AggregateRegistry,
        themes: Sequence[Theme],
    ) -> Report:
        numbers = assign_citation_numbers(registry.sources)

        def cite(claim: Claim) -> Tuple[int, ...]:
            return tuple(sorted(numbers[url] for url in claim.citation_urls))

        report = Report(
            query=query,
            depth=depth,
            degraded=registry.degraded,
            executive_summary=self._summary(query, depth, registry, themes),
            key_findings=[
                KeyFinding(rank=rank, claim=claim.text, confidence=claim.confidence, citations=cite(claim))
                for rank, claim in enumerate(self._rank_claims(registry.claims), 1)
            ],
            detailed_analysis=[
                ThemeSection(
                    title=theme.title,
                    high_confidence_claims=theme.count(ConfidenceLevel.HIGH),
                    medium_confidence_claims=theme.count(ConfidenceLevel.MEDIUM),
                    source_count=len(theme.source_urls),
                    subtopics=theme.subtopics,
                    claims=[
                        ThemeClaim(
                            claim=claim.text,
                            evidence=claim.evidence,
                            confidence=claim.confidence,
                            citations=cite(claim),
                            subtopics=claim.subtopics,
                        )
                        for claim in sorted(theme.claims, key=lambda c: (c.confidence.rank, c.order))
                    ],
                )
                for theme in themes
            ],
            sources=self._tiers(registry.sources, numbers),
            confidence_statistics=self._statistics(registry),
            research_gaps=registry.gaps,
        )
        logger.info(f"Composed report with {len(report.key_findings)} key findings and {len(numbers)} sources")
        return report

    def _rank_claims(self, claims: Sequence[Claim]) -> List[Claim]:
        ranked = sorted(claims, key=lambda c: (c.confidence.rank, -len(c.citations), c.order))
        return ranked[: self.key_findings_limit]

    @staticmethod
    def _tiers(sources: Sequence[Source], numbers: Dict[str, int]) -> SourceTiers:
        buckets: Dict[int, List[SourceEntry]] = {1: [], 2: [], 3: []}
        for source in sorted(sources, key=lambda s: numbers[s.url]):
            buckets[source.tier].append(SourceEntry(
                number=numbers[source.url],
                url=source.url,
                title=source.title or source.url,
                credibility=source.credibility,
                tier=source.tier,
                relevance_notes=tuple(sorted(source.relevance_notes)),
                related=tuple(sorted(numbers[u] for u in source.related if u in numbers)),
            ))
        return SourceTiers(
            high_credibility=buckets[1],
            moderate_credibility=buckets[2],
            low_credibility=buckets[3],
        )

    @staticmethod
    def _statistics(registry: AggregateRegistry) -> ConfidenceStatistics:
        total = len(registry.claims)
        levels = [c.confidence for c in registry.claims]

        def stat(level: ConfidenceLevel) -> LevelStatistic:
            count = levels.count(level)
            return LevelStatistic(count=count, percentage=round(100.0 * count / total, 1) if total else 0.0)

        credibilities = [s.credibility for s in registry.sources]
        average = round(sum(credibilities) / len(credibilities), 2) if credibilities else 0.0
        return ConfidenceStatistics(
            total_claims=total,
            high=stat(ConfidenceLevel.HIGH),
            medium=stat(ConfidenceLevel.MEDIUM),
            low=stat(ConfidenceLevel.LOW),
            average_source_credibility=average,
            total_unique_sources=len(registry.sources),
        )

    @staticmethod
    def _summary(query: str, depth: str, registry: AggregateRegistry, themes: Sequence[Theme]) -> str:
        levels = [c.confidence for c in registry.claims]
        succeeded = registry.total_documents - registry.failed_documents
        summary = (
            f"Research on '{query}' at {depth} depth synthesised {len(registry.claims)} claims "
            f"from {len(registry.sources)} unique sources across {succeeded} of "
            f"{registry.total_documents} subtopics, organized into {len(themes)} themes. "
            f"{levels.count(ConfidenceLevel.HIGH)} claims are high confidence, "
            f"{levels.count(ConfidenceLevel.MEDIUM)} medium and {levels.count(ConfidenceLevel.LOW)} low."
        )
        if themes:
            summary += f" The best-supported theme is '{themes[0].title}'."
        if registry.degraded:
            summary += f" This report is degraded: {registry.degraded_reason}. See Research Gaps."
        return summary


def compose_report(
    query: str,
    depth: str,
    registry: AggregateRegistry,
    themes: Sequence[Theme],
    key_findings_limit: int = 10,
) -> Report:
    return ReportComposer(key_findings_limit=key_findings_limit).compose(query, depth, registry, themes)
