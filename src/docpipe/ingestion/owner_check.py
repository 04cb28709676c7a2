"""
Detects documents that appear to belong to a different owner.

Looks for a person's name and date of birth in the analysis output and
compares them, loosely, with the owner record.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from .models import WorkItem

logger = logging.getLogger(__name__)

NAME_PATTERNS = [
    re.compile(r"(?i:patient\s*(?:name|:))\s*:?\s*([A-Z][a-z]+(?:\s+[A-Z][a-z]+)+)"),
    re.compile(r"(?i:name\s*(?:of patient|:))\s*([A-Z][a-z]+(?:\s+[A-Z][a-z]+)+)"),
    re.compile(r"(?:^|:|\n)\s*([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,2})\s*(?i:DOB|Date of Birth)"),
]

DOB_PATTERNS = [
    re.compile(
        r"(?:DOB|Date of Birth|Birth Date)\s*(?::|is)?\s*(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4})",
        re.IGNORECASE,
    ),
    re.compile(r"Born\s*(?:on|:)?\s*(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4})", re.IGNORECASE),
    re.compile(r"(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{4})\s*\(DOB\)", re.IGNORECASE),
]


def _schemas(item: WorkItem) -> List[Dict[str, Any]]:
    content = item.content or {}
    return [schema for schema in content.get("extracted_schemas") or [] if isinstance(schema, dict)]


def _page_text(item: WorkItem) -> str:
    analysis = (item.content or {}).get("analysis_result") or {}
    if not isinstance(analysis, dict):
        return ""

    lines: List[str] = []
    for page in analysis.get("pages") or []:
        for line in page.get("lines") or []:
            lines.append(str(line.get("content") or ""))
    return " ".join(lines)


def _first_match(patterns: Iterable["re.Pattern[str]"], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1):
            return match.group(1).strip()
    return None


def _nested(schema: Dict[str, Any], *path: str) -> Optional[str]:
    value: Any = schema
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value if isinstance(value, str) and value else None


def detect_owner_name(item: WorkItem) -> Optional[str]:
    if not (item.content or {}).get("analysis_result"):
        return None

    for schema in _schemas(item):
        for path in (("patientName",), ("patient", "name"), ("patient", "fullName"), ("subject", "name")):
            name = _nested(schema, *path)
            if name:
                return name

    return _first_match(NAME_PATTERNS, _page_text(item))


def detect_owner_dob(item: WorkItem) -> Optional[str]:
    if not (item.content or {}).get("analysis_result"):
        return None

    for schema in _schemas(item):
        for path in (("patientDOB",), ("patient", "dateOfBirth"), ("patient", "dob"), ("subject", "dateOfBirth")):
            dob = _nested(schema, *path)
            if dob:
                return dob

    return _first_match(DOB_PATTERNS, _page_text(item))


def _loosely_equal(detected: Optional[str], expected: Optional[str]) -> bool:
    # Either side unknown counts as a match.
    if not detected or not expected:
        return True
    detected, expected = detected.lower(), expected.lower()
    return detected in expected or expected in detected


def find_owner_mismatch(item: WorkItem, owner: Optional[Dict[str, Any]]) -> Optional[Dict[str, Optional[str]]]:
    """
    Return the detected identity when it disagrees with ``owner``, else ``None``.
    """
    detected_name = detect_owner_name(item)
    detected_dob = detect_owner_dob(item)
    if not detected_name and not detected_dob:
        return None

    owner = owner or {}
    name_matches = _loosely_equal(detected_name, owner.get("name"))
    dob_matches = _loosely_equal(detected_dob, owner.get("date_of_birth"))
    if name_matches and dob_matches:
        return None

    logger.warning(
        f"Item {item.id} may belong to a different owner than {item.owner_id} "
        f"(detected name: {detected_name}, dob: {detected_dob})"
    )
    return {"name": detected_name, "date_of_birth": detected_dob}
