"""
Step 4 of the deep-report pipeline
==================================
Thematic Organization Layer
---------------------------
Regroups the deduplicated claims from *Step 3* by what they are about rather
than by the subtopic that found them: the decomposition deliberately spreads
one theme across several subtopics, so grouping by subtopic would scatter
related evidence.

Claims are grouped in a single pass in aggregation order (single-linkage on
content-word overlap) and themes are ranked by evidentiary strength:
high-confidence claim count, then medium-confidence count, then distinct
sources cited, with the earliest claim breaking ties.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Sequence, Set, Tuple

from deep_report.step3 import AggregateRegistry, Claim, ConfidenceLevel
from deep_report.text import content_tokens, token_set_similarity

logger = logging.getLogger(__name__)

THEME_SIMILARITY_THRESHOLD = 0.3
TITLE_WORDS = 3


@dataclass(frozen=True)
class Theme:
    title: str
    claims: Tuple[Claim, ...]

    def count(self, level: ConfidenceLevel) -> int:
        return sum(1 for c in self.claims if c.confidence is level)

    @property
    def source_urls(self) -> Tuple[str, ...]:
        seen: List[str] = []
        for claim in self.claims:
            for url in claim.citation_urls:
                if url not in seen:
                    seen.append(url)
        return tuple(seen)

    @property
    def earliest_order(self) -> int:
        return min(c.order for c in self.claims)

    @property
    def subtopics(self) -> Tuple[str, ...]:
        seen: List[str] = []
        for claim in self.claims:
            for name in claim.subtopics:
                if name not in seen:
                    seen.append(name)
        return tuple(seen)

    def strength_key(self) -> Tuple[int, int, int, int]:
        """Ascending sort key: strongest theme first, earliest claim breaks ties."""
        return (
            -self.count(ConfidenceLevel.HIGH),
            -self.count(ConfidenceLevel.MEDIUM),
            -len(self.source_urls),
            self.earliest_order,
        )


def theme_title(claims: Sequence[Claim], words: int = TITLE_WORDS) -> str:
    """Most frequent content words across the claims, first appearance breaking ties."""
    counts: Counter = Counter()
    first_seen: Dict[str, int] = {}
    position = 0
    for claim in claims:
        for token in content_tokens(claim.text):
            if token not in first_seen:
                first_seen[token] = position
                position += 1
        counts.update(set(content_tokens(claim.text)))
    ranked = sorted(counts, key=lambda t: (-counts[t], first_seen[t]))
    if not ranked:
        return "General findings"
    return " ".join(ranked[:words]).capitalize()


class ThemeOrganizer:
    """Groups claims into cross-subtopic themes and orders them by strength."""

    def __init__(self, similarity_threshold: float = THEME_SIMILARITY_THRESHOLD):
        self.similarity_threshold = similarity_threshold

    def group(self, claims: Sequence[Claim]) -> List[List[Claim]]:
        groups: List[List[Claim]] = []
        group_tokens: List[List[Set[str]]] = []
        for claim in sorted(claims, key=lambda c: c.order):
            tokens = set(content_tokens(claim.text))
            best_idx, best_score = -1, 0.0
            for idx, members in enumerate(group_tokens):
                score = max(token_set_similarity(tokens, m) for m in members)
                if score >= self.similarity_threshold and score > best_score:
                    best_idx, best_score = idx, score
            if best_idx < 0:
                groups.append([claim])
                group_tokens.append([tokens])
            else:
                groups[best_idx].append(claim)
                group_tokens[best_idx].append(tokens)
        return groups

    def organize(self, registry: AggregateRegistry) -> List[Theme]:
        themes = [Theme(title=theme_title(members), claims=tuple(members)) for members in self.group(registry.claims)]
        themes.sort(key=Theme.strength_key)
        logger.info(f"Organized {len(registry.claims)} claims into {len(themes)} themes")
        return themes


def organize_themes(
    registry: AggregateRegistry,
    similarity_threshold: float = THEME_SIMILARITY_THRESHOLD,
) -> List[Theme]:
    return ThemeOrganizer(similarity_threshold=similarity_threshold).organize(registry)
