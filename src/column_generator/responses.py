"""Turn raw model text into output cell values for a column specification."""

import json
import logging
import re
from typing import Any

from .schema import ColumnSpec, GroupColumnSpec, SingleColumnSpec


logger = logging.getLogger(__name__)

UNDETECTABLE_TEXT = "__undetectable__"
RESPONSE_PREVIEW_CHARS = 200

_OPENING_FENCE = re.compile(r"^```(?:json)?[ \t]*\n?", re.IGNORECASE)
_CLOSING_FENCE = re.compile(r"\n?```\s*$")


class UnresolvedValue(str):
    """Marker for a cell the model response could not fill.

    It is a ``str`` so it serializes into the table unchanged, but it can be told
    apart from real model text with ``isinstance`` / ``is_unresolved``.
    """

    __slots__ = ()

    def __repr__(self) -> str:
        return "UNDETECTABLE"


UNDETECTABLE = UnresolvedValue(UNDETECTABLE_TEXT)


def is_unresolved(value: Any) -> bool:
    return isinstance(value, UnresolvedValue)


def strip_code_fence(text: str) -> str:
    stripped_text = text.strip()
    if not stripped_text.startswith("```"):
        return stripped_text
    stripped_text = _OPENING_FENCE.sub("", stripped_text, count=1)
    return _CLOSING_FENCE.sub("", stripped_text, count=1)


def _cell_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def decode_group_payload(text: str) -> dict[str, Any]:
    """Decode the JSON object a group column expects. Raises ValueError on anything else."""
    parsed = json.loads(strip_code_fence(text))
    if not isinstance(parsed, dict):
        raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


def distribute_response(
    text: str,
    column: ColumnSpec,
    *,
    row_number: int | None = None,
) -> dict[str, str]:
    if isinstance(column, SingleColumnSpec):
        return {column.name: text.strip()}

    if isinstance(column, GroupColumnSpec):
        try:
            parsed = decode_group_payload(text)
        except (ValueError, RecursionError) as decode_error:
            # JSONDecodeError is a ValueError; pathologically nested payloads overflow the decoder instead.
            row_label = f"Row {row_number}" if row_number is not None else "Row"
            logger.warning("    ✗ %s: Failed to parse JSON - %s", row_label, decode_error)
            logger.warning("      Response: %s...", text[:RESPONSE_PREVIEW_CHARS])
            return {field_name: UNDETECTABLE for field_name in column.columns}

        values: dict[str, str] = {}
        for field_name in column.columns:
            value = parsed.get(field_name)
            values[field_name] = UNDETECTABLE if value is None else _cell_text(value)
        return values

    raise TypeError(f"Unsupported column specification: {type(column).__name__}")
