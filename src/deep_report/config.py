"""
Run configuration for the deep-report pipeline.

Depth profiles map a requested research depth onto the number of subtopics
and the per-worker time budget used by the Dispatcher. Every value can be
overridden through environment variables (typically set in a ``.env`` file,
see :pyfunc:`deep_report.utils.load_dotenv_files`) or by the caller.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class DepthProfile:
    name: str
    subtopic_count: int
    worker_timeout: float  # seconds


DEPTH_PROFILES: Dict[str, DepthProfile] = {
    "quick": DepthProfile(name="quick", subtopic_count=3, worker_timeout=180.0),
    "medium": DepthProfile(name="medium", subtopic_count=5, worker_timeout=300.0),
    "deep": DepthProfile(name="deep", subtopic_count=10, worker_timeout=600.0),
}

DEFAULT_DEPTH = "medium"


def get_depth_profile(depth: str) -> DepthProfile:
    """Look up a depth profile by name (case-insensitive)."""
    try:
        return DEPTH_PROFILES[depth.strip().lower()]
    except KeyError:
        valid = ", ".join(DEPTH_PROFILES)
        raise ValueError(f"Unknown depth '{depth}'. Expected one of: {valid}")


def smaller_depth(depth: str) -> Optional[str]:
    """Return the next smaller depth name, or None when already at the smallest."""
    names = list(DEPTH_PROFILES)
    idx = names.index(get_depth_profile(depth).name)
    return names[idx - 1] if idx > 0 else None


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass
class PipelineSettings:
    """Run-wide knobs shared by every pipeline step."""

    model: str = "gpt-4.1"
    worker_timeout: Optional[float] = None  # None -> use the depth profile budget
    claim_similarity_threshold: float = 0.8
    max_keyword_overlap: int = 1
    max_concurrency: Optional[int] = None  # None -> one slot per subtopic
    key_findings_limit: int = 10

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        """Build settings from ``DEEP_REPORT_*`` environment variables."""
        defaults = cls()
        return cls(
            model=os.environ.get("DEEP_REPORT_MODEL", defaults.model),
            worker_timeout=_env_float("DEEP_REPORT_WORKER_TIMEOUT", defaults.worker_timeout),
            claim_similarity_threshold=_env_float(
                "DEEP_REPORT_CLAIM_THRESHOLD", defaults.claim_similarity_threshold
            ),
            max_keyword_overlap=_env_int("DEEP_REPORT_MAX_KEYWORD_OVERLAP", defaults.max_keyword_overlap),
            max_concurrency=_env_int("DEEP_REPORT_MAX_CONCURRENCY", defaults.max_concurrency),
        )

    def timeout_for(self, depth: str) -> float:
        if self.worker_timeout is not None:
            return self.worker_timeout
        return get_depth_profile(depth).worker_timeout
