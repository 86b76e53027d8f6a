"""
Deep-report research pipeline
=============================
Turns one free-text query into a single cited, confidence-scored report by
decomposing the query, fanning work out to parallel research workers,
merging and cross-validating their findings, and composing a thematic summary.
"""

from deep_report.step1 import decompose_query
from deep_report.step2 import dispatch
from deep_report.step3 import aggregate
from deep_report.step4 import organize_themes
from deep_report.step5 import compose_report
from deep_report.pipeline import run_research
from deep_report.utils import load_dotenv_files

__version__ = "0.1.0"
