"""
Text helpers shared by the aggregation and theming steps.

Similarity is a token-set Jaccard ratio: deterministic, model-free, and
symmetric, so the same pair of texts always scores the same.
"""
import re
from typing import FrozenSet, Iterable, List
from urllib.parse import urlparse

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:['.-][a-z0-9]+)*")

STOP_WORDS: FrozenSet[str] = frozenset(
    """
    a about above after again against all also am an and any are as at be because been
    before being below between both but by can could did do does doing down during each
    few for from further had has have having he her here hers him his how i if in into is
    it its itself just more most no nor not now of off on once only or other our ours out
    over own same she should so some such than that the their theirs them then there these
    they this those through to too under until up very was we were what when where which
    while who whom why will with would you your yours via per within without across among
    """.split()
)


def tokenize(text: str) -> List[str]:
    """Lower-case word tokens, in order."""
    return _TOKEN_RE.findall((text or "").lower())


def content_tokens(text: str) -> List[str]:
    """Word tokens with stop words and single characters removed, in order."""
    return [t for t in tokenize(text) if t not in STOP_WORDS and len(t) > 1]


def token_set_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard ratio of two token collections, 0.0 when either is empty."""
    ta, tb = set(a), set(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / float(len(ta | tb))


def domain_of(url: str) -> str:
    """Host name of ``url`` without a leading ``www.``; empty string if unparsable."""
    try:
        netloc = urlparse(url).netloc.lower()
    except ValueError:
        return ""
    netloc = netloc.rsplit("@", 1)[-1].split(":", 1)[0]
    if netloc.startswith("www."):
        netloc = netloc[4:]
    return netloc
