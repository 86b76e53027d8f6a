#!/usr/bin/env python3
"""
Deep-Report Pipeline Runner
===========================
Runs the complete pipeline for one research query:
1. Decomposition - split the query into non-overlapping subtopics
2. Dispatch - research every subtopic with its own parallel worker
3. Aggregation - deduplicate sources and claims, score confidence
4. Theming - regroup claims by theme
5. Composition - write the cited, confidence-scored report

Usage:
    python run_pipeline.py "Your research question" --depth medium --out-dir results

Depths:
    quick (3 subtopics), medium (5), deep (10).
"""

import asyncio
import logging
import argparse
import sys
from pathlib import Path

from deep_report.config import DEPTH_PROFILES, PipelineSettings
from deep_report.errors import InsufficientScope
from deep_report.pipeline import ResearchPipeline, PipelineResult
from deep_report.step1 import TemplateSubtopicPlanner, subtopics_to_json
from deep_report.utils import load_dotenv_files


def write_outputs(result: PipelineResult, out_dir: Path) -> None:
    """Write subtopics, raw worker findings and the report (Markdown + JSON)."""
    out_dir.mkdir(exist_ok=True, parents=True)

    with open(out_dir / "subtopics.json", "w", encoding="utf-8") as f:
        f.write(subtopics_to_json(result.subtopics))

    with open(out_dir / "findings.jsonl", "w", encoding="utf-8") as f:
        for doc in result.documents:
            f.write(doc.to_json() + "\n")

    with open(out_dir / "report.md", "w", encoding="utf-8") as f:
        f.write(result.report.to_markdown())

    with open(out_dir / "report.json", "w", encoding="utf-8") as f:
        f.write(result.report.to_json())


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the complete deep-report research pipeline")
    parser.add_argument("query", help="Research query, in quotes")
    parser.add_argument("--depth", "-d", default="medium", choices=list(DEPTH_PROFILES),
                        help="Research depth (default: medium)")
    parser.add_argument("--out-dir", "-o", default="./output", help="Output directory for all artifacts")
    parser.add_argument("--model", "-m", default=None, help="OpenAI model for planner and workers")
    parser.add_argument("--timeout", "-t", type=float, default=None,
                        help="Per-worker time budget in seconds (default: depth profile)")
    parser.add_argument("--concurrency", "-c", type=int, default=None,
                        help="Worker pool size (default: one per subtopic)")
    parser.add_argument("--offline", action="store_true",
                        help="Decompose with the built-in template planner instead of an LLM")
    parser.add_argument("--langfuse", action="store_true", help="Trace worker runs in Langfuse")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    load_dotenv_files()

    settings = PipelineSettings.from_env()
    if args.model:
        settings.model = args.model
    if args.timeout is not None:
        settings.worker_timeout = args.timeout
    if args.concurrency is not None:
        settings.max_concurrency = args.concurrency

    pipeline = ResearchPipeline(
        settings=settings,
        planner=TemplateSubtopicPlanner() if args.offline else None,
        enable_langfuse=args.langfuse,
    )

    print(f"Researching: {args.query}")
    print(f"Depth: {args.depth} ({DEPTH_PROFILES[args.depth].subtopic_count} subtopics), model: {settings.model}")
    try:
        result = asyncio.run(pipeline.run(args.query, args.depth))
    except InsufficientScope as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    out_dir = Path(args.out_dir)
    write_outputs(result, out_dir)

    stats = result.report.confidence_statistics
    print(f"\nReport saved to {out_dir / 'report.md'}")
    print(f"Claims: {stats.total_claims} (high {stats.high.count}, medium {stats.medium.count}, "
          f"low {stats.low.count}); sources: {stats.total_unique_sources}")
    if result.report.degraded:
        print("Warning: all research workers failed; see the Research Gaps section.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
