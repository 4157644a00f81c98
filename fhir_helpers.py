"""
fhir_helpers.py
---------------
HealthDoc Builder — ABDM Health Document Records — Shared FHIR Helpers
----------------------------------------------------------------------
Small, dependency-free helpers shared by every record builder:

  • Identifiers   — random UUIDv4 tokens and the ``urn:uuid:`` local-reference
                    scheme used for every Bundle.entry.fullUrl and reference.
  • Dates         — clinician-entered dates (``DD-MM-YYYY`` / ``DD/MM/YYYY`` /
                    ``YYYY-MM-DD``) → FHIR ``date``; wall-clock datetimes →
                    ``YYYY-MM-DDTHH:MM:SS±HH:MM`` in the *local* time zone.
  • Narrative     — XHTML ``Resource.text`` blocks carrying ``lang`` and
                    ``xml:lang`` so NRCES validators do not warn.

Public API:
    new_id()                          — fresh lowercase UUIDv4 string.
    local_reference()                 — ``urn:uuid:<id>``.
    to_canonical_date()               — canonical ``YYYY-MM-DD`` or ``None``.
    to_offset_timestamp()             — local offset-qualified timestamp.
    local_input_to_offset_timestamp() — same, from a ``datetime-local`` string.
    build_narrative()                 — generated XHTML narrative dict.

Project: HealthDoc Builder
"""

from __future__ import annotations

import html
import logging
import re
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

NARRATIVE_LANG = "en-IN"
_XHTML_NS = "http://www.w3.org/1999/xhtml"
_LOCAL_REF_PREFIX = "urn:uuid:"

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
# Day and month may be 1–2 digits; the two separators must match.
_DMY_DATE_RE = re.compile(r"^(\d{1,2})([-/])(\d{1,2})\2(\d{4})$")


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def new_id() -> str:
    """Return a fresh random UUIDv4 in canonical lowercase hyphenated form."""
    return str(uuid.uuid4())


def local_reference(resource_id: str) -> str:
    """Return the bundle-scoped reference for *resource_id* (``urn:uuid:<id>``)."""
    return f"{_LOCAL_REF_PREFIX}{resource_id}"


def is_local_reference(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(_LOCAL_REF_PREFIX)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def _checked_date(year: str, month: str, day: str) -> Optional[str]:
    try:
        return date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None


def to_canonical_date(value: Any) -> Optional[str]:
    """
    Normalise a clinician-entered date string to FHIR ``YYYY-MM-DD``.

    Accepted shapes:
      * ``YYYY-MM-DD``  — returned unchanged.
      * ``DD-MM-YYYY``  — reordered, zero-padded.
      * ``DD/MM/YYYY``  — reordered, zero-padded.

    Anything else (blank, free text, impossible calendar dates such as
    ``31-02-1990``) returns ``None`` so the caller can omit the field.
    Applying the function to its own output is a no-op.

    Example::

        to_canonical_date("25-12-1990")   # → "1990-12-25"
        to_canonical_date("1/2/1990")     # → "1990-02-01"
        to_canonical_date("not-a-date")   # → None
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    match = _ISO_DATE_RE.match(text)
    if match:
        return _checked_date(match.group(1), match.group(2), match.group(3))

    match = _DMY_DATE_RE.match(text)
    if match:
        day, _sep, month, year = match.groups()
        return _checked_date(year, month, day)

    logger.debug("fhir_helpers: unrecognised date %r — omitted.", text)
    return None


def _format_offset(offset: Optional[timedelta]) -> str:
    total_minutes = int((offset or timedelta(0)).total_seconds() // 60)
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"


def to_offset_timestamp(moment: Optional[datetime] = None) -> str:
    """
    Render *moment* as ``YYYY-MM-DDTHH:MM:SS±HH:MM`` in local time.

    The local wall clock and the local UTC offset in force at *moment* are
    used, not UTC.  Naive datetimes are taken as local time; aware datetimes
    are converted to the local zone first.  Defaults to now.
    """
    local = (moment or datetime.now()).astimezone()
    return local.strftime("%Y-%m-%dT%H:%M:%S") + _format_offset(local.utcoffset())


def local_input_to_offset_timestamp(local_value: Optional[str] = None) -> str:
    """
    Convert a ``datetime-local`` form value (``YYYY-MM-DDTHH:MM[:SS]``) to an
    offset-qualified timestamp.  Blank input means "now".

    Unparseable input is treated as malformed optional input: it is logged
    and replaced by the current time rather than failing the build.
    """
    if local_value is None or not str(local_value).strip():
        return to_offset_timestamp()
    try:
        parsed = datetime.fromisoformat(str(local_value).strip())
    except ValueError:
        logger.warning(
            "fhir_helpers: unparseable authored time %r — using current time.",
            local_value,
        )
        return to_offset_timestamp()
    return to_offset_timestamp(parsed)


# ---------------------------------------------------------------------------
# Narrative
# ---------------------------------------------------------------------------

def build_narrative(title: str, inner_html: str = "") -> Dict[str, str]:
    """
    Wrap *title* and *inner_html* into a generated FHIR narrative.

    The title is escaped here; *inner_html* is inserted verbatim, so callers
    must ``html.escape`` any user supplied text they put into it.
    """
    return {
        "status": "generated",
        "div": (
            f'<div xmlns="{_XHTML_NS}" lang="{NARRATIVE_LANG}" xml:lang="{NARRATIVE_LANG}">'
            f"<h3>{html.escape(title)}</h3>{inner_html}</div>"
        ),
    }
