"""
Response normalization.

The provider answers the same endpoint family in several envelope shapes.
Each recognized shape is an extractor below; they are tried in a fixed
order and the first match wins. Nothing else in the pipeline inspects
payload shape.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Extractor = Callable[[Any], Optional[list]]


def _as_sequence(value: Any) -> Optional[list]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return None


def _field(value: Any, key: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(key)
    return None


def _bare(raw: Any) -> Optional[list]:
    return _as_sequence(raw)


def _double_envelope(raw: Any) -> Optional[list]:
    return _as_sequence(_field(_field(raw, "data"), "data"))


def _single_envelope(raw: Any) -> Optional[list]:
    return _as_sequence(_field(raw, "data"))


def _results(raw: Any) -> Optional[list]:
    return _as_sequence(_field(raw, "results"))


def _quotes(raw: Any) -> Optional[list]:
    return _as_sequence(_field(raw, "quotes"))


# Order matters: a nested envelope must be checked before its outer `data`.
EXTRACTORS: Tuple[Tuple[str, Extractor], ...] = (
    ("bare", _bare),
    ("data.data", _double_envelope),
    ("data", _single_envelope),
    ("results", _results),
    ("quotes", _quotes),
)


def match_shape(raw: Any) -> Tuple[Optional[str], list]:
    """Return the tag of the first matching shape and its points."""
    for tag, extractor in EXTRACTORS:
        points = extractor(raw)
        if points is not None:
            return tag, points
    return None, []


def detect_shape(raw: Any) -> Optional[str]:
    tag, _ = match_shape(raw)
    return tag


def normalize(raw: Any) -> list:
    """Extract the list of time-series points from any known payload shape.

    Never raises. Unrecognized payloads (including ``None`` and scalars)
    yield an empty list and a warning.
    """
    tag, points = match_shape(raw)
    if tag is None:
        logger.warning("Unrecognized payload shape (%s); expected a list or a data/results/quotes envelope", type(raw).__name__)
        return []
    logger.debug("Payload matched shape %r with %s points", tag, len(points))
    return points
