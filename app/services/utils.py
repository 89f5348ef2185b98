"""Utility functions for parsing LLM responses."""
import json
import logging
from typing import Any

import json_repair

logger = logging.getLogger(__name__)


def _preprocess_response(response: str) -> str:
    """Strip markdown fences and preamble, return content from the first '{'."""
    response = (response or "").strip()
    if response.startswith("```json"):
        response = response[7:]
    if response.startswith("```"):
        response = response[3:]
    if response.endswith("```"):
        response = response[:-3]
    response = response.strip()
    idx = response.find("{")
    if idx >= 0:
        response = response[idx:]
    return response


def _try_close_truncated_json(s: str) -> str:
    """If string looks truncated (ends with comma or incomplete key), append closing brackets."""
    s = s.rstrip()
    if not s or s[-1] == "}":
        return s
    if s[-1] == '"':
        return s + '": null}'
    if s[-1] in (",", ":"):
        return s + " null}"
    return s


def parse_json_response(response: str) -> dict[str, Any]:
    """Parse a JSON object from an LLM response.

    Handles markdown fences, preamble and trailing text. Tries: 1) strict parse,
    2) truncate at last balanced '}', 3) json_repair on the full text,
    4) close a truncated object and repair. Raises the first decode error (or
    ValueError) when nothing usable is recovered.
    """
    preprocessed = _preprocess_response(response)
    first_error: Exception | None = None

    try:
        obj, _ = json.JSONDecoder().raw_decode(preprocessed)
        if isinstance(obj, dict):
            return obj
        first_error = ValueError(f"Expected JSON object, got {type(obj).__name__}")
    except json.JSONDecodeError as e:
        first_error = e
        logger.warning("Failed to parse JSON: %s", e)
        logger.debug("Response was: %s", (response or "")[:500])

    last_brace = preprocessed.rfind("}")
    if last_brace > 0:
        partial = preprocessed[: last_brace + 1]
        if partial.count("{") == partial.count("}"):
            try:
                obj, _ = json.JSONDecoder().raw_decode(partial)
                if isinstance(obj, dict):
                    logger.warning("Recovered partial JSON by truncating at last complete brace")
                    return obj
            except json.JSONDecodeError:
                pass

    if preprocessed.startswith("{"):
        for candidate in (preprocessed, _try_close_truncated_json(preprocessed)):
            obj = json_repair.loads(candidate)
            if isinstance(obj, dict) and obj:
                logger.warning("Recovered JSON using json_repair after strict parse failed")
                return obj

    raise first_error or ValueError("Failed to parse JSON")
