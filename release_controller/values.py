"""Parsing of the values text carried by a release request."""

import logging
from typing import Any

import yaml

from .exceptions import ValidationError

__all__ = ["parse_values"]

_LOGGER = logging.getLogger(__name__)


def parse_values(text: str | None) -> dict[str, Any]:
    """Parse the raw values text of a request into a mapping.

    Empty text means no overrides. Anything that is not a YAML mapping is a
    ValidationError, so it is never handed to the packaging engine.
    """
    if text is not None and not isinstance(text, str):
        raise ValidationError(
            f"Values must be YAML text, got {type(text).__name__}"
        )
    if text is None or not text.strip():
        return {}
    try:
        values = yaml.safe_load(text)
    except yaml.YAMLError as err:
        raise ValidationError(f"Values are not valid YAML: {err}") from err
    if values is None:
        return {}
    if not isinstance(values, dict):
        raise ValidationError(
            f"Values must be a YAML mapping, got {type(values).__name__}"
        )
    _LOGGER.debug("Parsed %d top level values", len(values))
    return values
