"""Prompt registry: load versioned prompt templates from app/prompts/<name>/<version>.yaml.

Templates use str.format placeholders ({documents}); literal JSON braces are doubled.
"""
import hashlib
import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

import yaml

logger = logging.getLogger(__name__)

# Directory containing prompt name/version folders (app/prompts/)
_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


class PromptNotFoundError(LookupError):
    """No prompt file for the requested name/version."""


def list_names() -> List[str]:
    """List available prompt names (top-level folders under prompts/)."""
    if not _PROMPTS_DIR.is_dir():
        return []
    return sorted(p.name for p in _PROMPTS_DIR.iterdir() if p.is_dir() and not p.name.startswith("."))


def list_versions(name: str) -> List[str]:
    """List available version strings for a prompt name (e.g. ['v1', 'v2'])."""
    dir_path = _PROMPTS_DIR / name
    if not dir_path.is_dir():
        return []
    return sorted(p.stem for p in dir_path.iterdir() if p.suffix == ".yaml" and p.stem)


@lru_cache(maxsize=64)
def _load_prompt_file(name: str, version: str) -> Optional[dict]:
    """Load a single prompt YAML file. Returns None if not found or unreadable."""
    path = _PROMPTS_DIR / name / f"{version}.yaml"
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else None
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load prompt %s/%s: %s", name, version, e)
        return None


def get_prompt(name: str, version: str = "v1") -> Optional[str]:
    """Template body by name and version, or None if not found."""
    data = _load_prompt_file(name, version)
    if not data:
        return None
    body = data.get("body")
    return body.strip() if isinstance(body, str) else None


def get_prompt_with_meta(name: str, version: str = "v1") -> Optional[dict]:
    """Template with metadata: body, variables, description, version, sha."""
    body = get_prompt(name, version)
    if body is None:
        return None
    data = _load_prompt_file(name, version) or {}
    return {
        "body": body,
        "variables": data.get("variables") or [],
        "description": data.get("description") or "",
        "version": data.get("version") or version,
        "sha": prompt_sha(body),
    }


def prompt_sha(body: str) -> str:
    """Content-derived SHA256 (hex) for a prompt body. Same content => same SHA."""
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def render_prompt(name: str, version: str = "v1", **variables) -> str:
    """Fill a template's placeholders. Raises PromptNotFoundError if the prompt is missing."""
    body = get_prompt(name, version)
    if body is None:
        raise PromptNotFoundError(f"Prompt {name}/{version} not found under {_PROMPTS_DIR}")
    return body.format(**variables)
