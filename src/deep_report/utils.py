"""
Utility functions for the deep_report package.
"""
import os
import logging
from pathlib import Path
from typing import Optional, List
from agents import ModelSettings

# Configure logging
logger = logging.getLogger(__name__)

REASONING_MODELS = ("o4-mini", "o3")


def find_dotenv_files(start_dir: Optional[str] = None, max_levels_up: int = 3) -> List[str]:
    """
    Find .env files in the current directory and parent directories.

    Args:
        start_dir: Directory to start searching from. Defaults to current directory.
        max_levels_up: Maximum number of parent directories to search.

    Returns:
        List of paths to .env files, ordered from highest level (furthest parent) to lowest.
    """
    if start_dir is None:
        start_dir = os.getcwd()

    dotenv_files = []
    current_dir = Path(start_dir).absolute()

    for _ in range(max_levels_up + 1):
        env_file = current_dir / '.env'
        if env_file.exists():
            dotenv_files.append(str(env_file))

        parent_dir = current_dir.parent
        if parent_dir == current_dir:  # filesystem root
            break
        current_dir = parent_dir

    return list(reversed(dotenv_files))


def load_dotenv_files(start_dir: Optional[str] = None, max_levels_up: int = 3) -> List[str]:
    """
    Load environment variables from .env files in current and parent directories.

    Variables in lower directories (closer to start_dir) take precedence over
    those in higher directories.

    Returns:
        List of paths to .env files that were successfully loaded.
    """
    from dotenv import load_dotenv

    loaded_files = []
    for dotenv_path in find_dotenv_files(start_dir, max_levels_up):
        if load_dotenv(dotenv_path, override=True):
            loaded_files.append(dotenv_path)
            logger.info(f"Loaded environment variables from: {dotenv_path}")

    return loaded_files


def get_model_settings(model_name, temperature=0.7, max_tokens=None, parallel_tool_calls=False):
    """
    Returns model settings with appropriate reasoning effort based on model type.

    Reasoning models (o4-mini, o3) do not accept a temperature and get high
    reasoning effort; every other model gets the plain sampling parameters.
    """
    if model_name in REASONING_MODELS:
        settings = ModelSettings(
            max_tokens=max_tokens,
            parallel_tool_calls=parallel_tool_calls
        )
        settings.reasoning_effort = "high"
    else:
        settings = ModelSettings(
            temperature=temperature,
            max_tokens=max_tokens,
            parallel_tool_calls=parallel_tool_calls
        )

    return settings


def extract_json_block(text: str) -> str:
    """
    Return the outermost JSON object embedded in an agent response.

    Agents occasionally wrap JSON in prose or markdown fences; this keeps the
    substring between the first ``{`` and the last ``}``.

    Raises:
        ValueError: If no JSON object is present.
    """
    start_idx = text.find('{')
    end_idx = text.rfind('}') + 1
    if start_idx < 0 or end_idx <= start_idx:
        raise ValueError("No JSON object found in agent output")
    return text[start_idx:end_idx]
