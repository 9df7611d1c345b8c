"""
Record Validation and Enrichment

parse_line → validate_record → enrich_record / dead_letter are pure
functions; the pipeline only decides where their output is written.
"""

import json
from datetime import datetime, timezone
from typing import Any

import orjson
from pydantic import ValidationError

from utils.lookup import lookup_department_code
from utils.schemas import DeadLetterEntry, UserRecord, ValidationOutcome

INVALID_JSON = "invalid_json"


class ParseError(ValueError):
    """Line is not a JSON object."""


def parse_line(line: str) -> dict[str, Any]:
    """
    Parse one JSONL line into a record dict.

    Raises:
        ParseError: If the line is not valid JSON or not a JSON object
    """
    try:
        # Parse JSON with orjson fallback to json
        try:
            value = orjson.loads(line)
        except orjson.JSONDecodeError:
            value = json.loads(line)
    # Decode errors of both parsers are ValueErrors; json recurses on deeply nested input
    except (ValueError, RecursionError) as e:
        raise ParseError(f"{INVALID_JSON}: {e}") from e

    if not isinstance(value, dict):
        raise ParseError(f"{INVALID_JSON}: expected a JSON object, got {type(value).__name__}")
    return value


def _format_error(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error["loc"]) or "record"
    message = error["msg"].removeprefix("Value error, ")
    return f"{location}: {message}"


def validate_record(record: dict[str, Any]) -> ValidationOutcome:
    """Evaluate every rule and collect one message per violation."""
    try:
        UserRecord.model_validate(record)
    except ValidationError as e:
        return ValidationOutcome(
            record=record,
            valid=False,
            errors=[_format_error(err) for err in e.errors()],
        )
    return ValidationOutcome(record=record, valid=True)


def enrich_record(record: dict[str, Any], dept_map: dict[str, str]) -> dict[str, Any]:
    """Attach departmentCode (case-sensitive lookup, UNK fallback) and insertionDate."""
    department = record["company"]["department"]
    return {
        **record,
        "departmentCode": lookup_department_code(dept_map, department),
        "insertionDate": datetime.now(timezone.utc).isoformat(),
    }


def dead_letter(original: Any, errors: list[str]) -> DeadLetterEntry:
    return DeadLetterEntry(original_record=original, errors=errors)
