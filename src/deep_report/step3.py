"""
Step 3 of the deep-report pipeline
==================================
Aggregation & Cross-Validation Layer
------------------------------------
Merges the findings documents produced by *Step 2* into one internally
consistent registry of sources and claims, then scores every surviving claim
by how many independent, credible sources back it.

Highlights
~~~~~~~~~~
* **Source dedup by URL** – colliding sources keep the *maximum* credibility
  and the union of relevance notes. Same-domain sources with near-identical
  titles stay distinct and are only cross-referenced as ``related``.
* **Fuzzy claim dedup** – claims whose token-set similarity exceeds the
  threshold (0.8) are merged in a single pass against each cluster's current
  representative; the longer wording becomes canonical.
* **Derived confidence** – a claim's confidence is recomputed from its final
  citation set every time it is read, never stored.
* **Failure tolerant** – malformed documents are dropped with a gap record;
  when nothing survives the registry is marked degraded instead of raising.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from deep_report.errors import EmptyAggregate
from deep_report.step2 import ClaimIn, FindingsDocument, SourceIn, coerce_findings
from deep_report.text import domain_of, token_set_similarity, tokenize

logger = logging.getLogger(__name__)

CLAIM_SIMILARITY_THRESHOLD = 0.8
RELATED_CLAIM_THRESHOLD = 0.5
RELATED_TITLE_THRESHOLD = 0.8

# -----------------------------
# Registry entities
# -----------------------------

class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank, 0 = strongest."""
        return {"high": 0, "medium": 1, "low": 2}[self.value]

    @property
    def marker(self) -> str:
        return f"[{self.value.upper()}]"


@dataclass(frozen=True)
class Source:
    url: str
    title: str
    credibility: int
    relevance_notes: FrozenSet[str] = frozenset()
    author: Optional[str] = None
    organization: Optional[str] = None
    original_url: Optional[str] = None
    related: FrozenSet[str] = frozenset()  # URLs of same-domain look-alikes

    @property
    def domain(self) -> str:
        return domain_of(self.url)

    @property
    def publisher(self) -> str:
        """Publishing organization, falling back to the domain."""
        return (self.organization or self.domain).strip().lower()

    @property
    def tier(self) -> int:
        """1 for credibility 5-4, 2 for 3, 3 for 2-1."""
        if self.credibility >= 4:
            return 1
        if self.credibility == 3:
            return 2
        return 3


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def sources_independent(a: Source, b: Source) -> bool:
    """
    Two sources corroborate each other independently when they come from
    different domains, differ in author or organization, and neither is a
    republication of the other (or of the same original reporting).
    Publication dates are not considered.
    """
    if a.url == b.url or a.domain == b.domain:
        return False

    same_author = bool(a.author and b.author) and _norm(a.author) == _norm(b.author)
    same_org = a.publisher == b.publisher
    if same_author and same_org:
        return False

    if b.url == a.original_url or a.url == b.original_url:
        return False
    if a.original_url and _norm(a.original_url) == _norm(b.original_url):
        return False
    return True


def _has_independent_pair(sources: Sequence[Source]) -> bool:
    return any(sources_independent(a, b) for a, b in combinations(sources, 2))


def score_confidence(citations: Iterable[Source]) -> ConfidenceLevel:
    """
    Confidence of a claim from its final citation set.

    * high   -- two or more independent sources, each with credibility >= 3
    * medium -- one credible (>= 3) source, or two or more weaker sources
    * low    -- a single weak source (or none at all)
    """
    unique: Dict[str, Source] = {}
    for source in citations:
        unique.setdefault(source.url, source)
    sources = list(unique.values())

    credible = [s for s in sources if s.credibility >= 3]
    if _has_independent_pair(credible):
        return ConfidenceLevel.HIGH
    if credible or len(sources) >= 2:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


@dataclass(frozen=True)
class Claim:
    text: str
    evidence: str
    citations: Tuple[Source, ...]
    order: int  # position in aggregation order
    subtopics: Tuple[str, ...] = ()
    related: Tuple[int, ...] = ()  # orders of cross-referenced claims
    merged_count: int = 1

    @property
    def confidence(self) -> ConfidenceLevel:
        return score_confidence(self.citations)

    @property
    def citation_urls(self) -> Tuple[str, ...]:
        return tuple(s.url for s in self.citations)


@dataclass(frozen=True)
class AggregateRegistry:
    """Read-only result of aggregation, handed to the theming and report steps."""
    sources: Tuple[Source, ...]
    claims: Tuple[Claim, ...]
    gaps: Tuple[str, ...]
    total_documents: int
    failed_documents: int
    degraded_reason: Optional[EmptyAggregate] = None

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None

    def source(self, url: str) -> Source:
        for s in self.sources:
            if s.url == url:
                return s
        raise KeyError(url)

# -----------------------------
# Mutable working state (owned by the Aggregator)
# -----------------------------

@dataclass
class _SourceEntry:
    url: str
    title: str
    credibility: int
    notes: Set[str] = field(default_factory=set)
    author: Optional[str] = None
    organization: Optional[str] = None
    original_url: Optional[str] = None
    related: Set[str] = field(default_factory=set)

    def freeze(self) -> Source:
        return Source(
            url=self.url,
            title=self.title,
            credibility=self.credibility,
            relevance_notes=frozenset(self.notes),
            author=self.author,
            organization=self.organization,
            original_url=self.original_url,
            related=frozenset(self.related),
        )


@dataclass
class _ClaimCluster:
    text: str
    tokens: Set[str]
    evidence: str
    order: int
    citation_urls: List[str] = field(default_factory=list)
    subtopics: List[str] = field(default_factory=list)
    related: Set[int] = field(default_factory=set)
    merged_count: int = 1

    def add_citations(self, urls: Iterable[str]) -> None:
        for url in urls:
            if url not in self.citation_urls:
                self.citation_urls.append(url)

    def add_subtopic(self, subtopic: str) -> None:
        if subtopic not in self.subtopics:
            self.subtopics.append(subtopic)

# -----------------------------
# Aggregator
# -----------------------------

class Aggregator:
    """
    Owns the evolving source/claim registry while findings are merged.

    Documents are ingested one at a time; call :pymeth:`finalize` to obtain the
    read-only :class:`AggregateRegistry`.
    """

    def __init__(
        self,
        similarity_threshold: float = CLAIM_SIMILARITY_THRESHOLD,
        related_claim_threshold: float = RELATED_CLAIM_THRESHOLD,
        related_title_threshold: float = RELATED_TITLE_THRESHOLD,
    ):
        self.similarity_threshold = similarity_threshold
        self.related_claim_threshold = related_claim_threshold
        self.related_title_threshold = related_title_threshold
        self._sources: Dict[str, _SourceEntry] = {}
        self._clusters: List[_ClaimCluster] = []
        self._gaps: List[str] = []
        self._documents = 0
        self._failed = 0

    # ---- gaps -------------------------------------------------------------

    def record_gap(self, gap: str) -> None:
        gap = gap.strip()
        if gap and gap not in self._gaps:
            self._gaps.append(gap)

    # ---- sources ----------------------------------------------------------

    def merge_source(self, incoming: SourceIn) -> str:
        """Add or merge one source; returns its URL key."""
        entry = self._sources.get(incoming.url)
        if entry is None:
            entry = _SourceEntry(
                url=incoming.url,
                title=incoming.title.strip(),
                credibility=incoming.credibility,
                author=incoming.author,
                organization=incoming.organization,
                original_url=incoming.original_url,
            )
            self._link_related(entry)
            self._sources[entry.url] = entry
        else:
            entry.credibility = max(entry.credibility, incoming.credibility)
            if not entry.title and incoming.title.strip():
                entry.title = incoming.title.strip()
                self._link_related(entry)
            entry.author = entry.author or incoming.author
            entry.organization = entry.organization or incoming.organization
            entry.original_url = entry.original_url or incoming.original_url

        if incoming.relevance.strip():
            entry.notes.add(incoming.relevance.strip())
        return entry.url

    def merge_sources(self, sources: Iterable[SourceIn]) -> List[str]:
        return [self.merge_source(s) for s in sources]

    def _link_related(self, entry: _SourceEntry) -> None:
        domain = domain_of(entry.url)
        title_tokens = tokenize(entry.title)
        if not domain or not title_tokens:
            return
        for other in self._sources.values():
            if other.url == entry.url or domain_of(other.url) != domain:
                continue
            if token_set_similarity(title_tokens, tokenize(other.title)) >= self.related_title_threshold:
                entry.related.add(other.url)
                other.related.add(entry.url)

    # ---- claims -----------------------------------------------------------

    def add_claim(self, claim: ClaimIn, subtopic: str) -> None:
        urls: List[str] = []
        for url in self.merge_sources(claim.sources):
            if url not in urls:
                urls.append(url)

        text = " ".join(claim.claim.split())
        tokens = set(tokenize(text))
        evidence = claim.evidence.strip()

        best: Optional[_ClaimCluster] = None
        best_score = 0.0
        related: List[_ClaimCluster] = []
        for cluster in self._clusters:
            score = token_set_similarity(tokens, cluster.tokens)
            if score > self.similarity_threshold and score > best_score:
                best, best_score = cluster, score
            elif score >= self.related_claim_threshold:
                related.append(cluster)

        if best is not None:
            best.add_citations(urls)
            best.add_subtopic(subtopic)
            best.merged_count += 1
            if len(text) > len(best.text):
                best.text, best.tokens = text, tokens
            if len(evidence) > len(best.evidence):
                best.evidence = evidence
            return

        cluster = _ClaimCluster(text=text, tokens=tokens, evidence=evidence, order=len(self._clusters))
        cluster.add_citations(urls)
        cluster.add_subtopic(subtopic)
        for other in related:
            cluster.related.add(other.order)
            other.related.add(cluster.order)
        self._clusters.append(cluster)

    # ---- documents --------------------------------------------------------

    def ingest(self, raw: Union[FindingsDocument, Mapping[str, Any]]) -> bool:
        """
        Merge one findings document.

        Returns:
            True when the document contributed findings, False when it was a
            failed or malformed document (a gap is recorded instead).
        """
        self._documents += 1
        try:
            document = coerce_findings(raw)
        except ValidationError:
            name = raw.get("subtopic") if isinstance(raw, Mapping) else None
            name = name if isinstance(name, str) and name.strip() else f"#{self._documents}"
            self._failed += 1
            self.record_gap(f"Subtopic '{name}' returned malformed data")
            logger.warning(f"Discarded malformed findings document for subtopic '{name}'")
            return False

        if document.failed:
            self._failed += 1
            for gap in document.gaps:
                self.record_gap(gap)
            return False

        for gap in document.gaps:
            self.record_gap(f"{document.subtopic}: {gap}")
        for claim in document.claims:
            self.add_claim(claim, document.subtopic)
        return True

    def ingest_all(self, documents: Iterable[Union[FindingsDocument, Mapping[str, Any]]]) -> None:
        for document in documents:
            self.ingest(document)
        logger.info(
            f"Aggregated {len(self._clusters)} claims from {len(self._sources)} unique sources "
            f"({self._failed} of {self._documents} documents failed)"
        )

    def finalize(self) -> AggregateRegistry:
        """Snapshot the registry; confidence is derived from the merged sources."""
        sources = {url: entry.freeze() for url, entry in self._sources.items()}
        claims = tuple(
            Claim(
                text=c.text,
                evidence=c.evidence,
                citations=tuple(sources[u] for u in c.citation_urls),
                order=c.order,
                subtopics=tuple(c.subtopics),
                related=tuple(sorted(c.related)),
                merged_count=c.merged_count,
            )
            for c in self._clusters
        )

        gaps = list(self._gaps)
        reason = None
        if not claims:
            reason = EmptyAggregate(self._failed, self._documents)
            gaps.append(str(reason))
            logger.warning(f"Degraded report: {reason}")

        return AggregateRegistry(
            sources=tuple(sources.values()),
            claims=claims,
            gaps=tuple(gaps),
            total_documents=self._documents,
            failed_documents=self._failed,
            degraded_reason=reason,
        )

# -----------------------------
# Public API
# -----------------------------

def aggregate(
    documents: Iterable[Union[FindingsDocument, Mapping[str, Any]]],
    similarity_threshold: float = CLAIM_SIMILARITY_THRESHOLD,
    extra_gaps: Sequence[str] = (),
) -> AggregateRegistry:
    """
    Merge findings documents into a deduplicated, confidence-scored registry.

    Args:
        documents: Findings documents in canonical (subtopic) order.
        similarity_threshold: Claims scoring strictly above this are merged.
        extra_gaps: Gaps recorded upstream (e.g. by the Dispatcher).
    """
    aggregator = Aggregator(similarity_threshold=similarity_threshold)
    for gap in extra_gaps:
        aggregator.record_gap(gap)
    aggregator.ingest_all(documents)
    return aggregator.finalize()
