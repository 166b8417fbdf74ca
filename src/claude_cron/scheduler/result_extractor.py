"""
Result extraction from captured CLI output.

The CLI's structured output arrives in one of two shapes:
- a single JSON value (an object, or an array of message objects)
- newline-delimited JSON records, one message per line

Either way the record of interest is the terminal one with
"type": "result". Not finding it is an expected outcome.
"""

import json
from typing import Any, Optional

from .entities import ResultRecord

RESULT_TYPE = "result"


def _is_result(record: Any) -> bool:
    return isinstance(record, dict) and record.get("type") == RESULT_TYPE


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _optional_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _to_record(record: dict) -> ResultRecord:
    usage = record.get("usage")
    if not isinstance(usage, dict):
        usage = {}

    cost = record.get("total_cost_usd")
    if cost is None:
        cost = record.get("cost_usd")

    text = record.get("result")

    return ResultRecord(
        result=text if isinstance(text, str) else "",
        cost_usd=_optional_float(cost),
        input_tokens=_optional_int(usage.get("input_tokens")),
        output_tokens=_optional_int(usage.get("output_tokens")),
        is_error=bool(record.get("is_error", False)),
        subtype=record.get("subtype"),
        session_id=record.get("session_id"),
        num_turns=_optional_int(record.get("num_turns")),
    )


def _from_document(document: Any) -> Optional[dict]:
    if _is_result(document):
        return document
    if isinstance(document, list):
        for item in document:
            if _is_result(item):
                return item
    return None


def _from_lines(text: str) -> Optional[dict]:
    # Newest record wins, so scan from the end. Split on "\n" only: U+2028
    # and other separators str.splitlines() honours may sit raw in strings.
    for line in reversed(text.split("\n")):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except (ValueError, RecursionError):
            continue
        if _is_result(record):
            return record
    return None


def extract_result(raw_output: Optional[str]) -> Optional[ResultRecord]:
    """
    Parse captured stdout into a structured result record.

    Args:
        raw_output: Entire captured standard output (decoded)

    Returns:
        ResultRecord, or None if no terminal result record is present
    """
    if not raw_output:
        return None

    text = raw_output.strip()
    if not text:
        return None

    try:
        document = json.loads(text)
    except (ValueError, RecursionError):
        record = _from_lines(text)
    else:
        record = _from_document(document)

    if record is None:
        return None

    return _to_record(record)
