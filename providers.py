"""
providers.py
------------
HealthDoc Builder — ABDM Health Document Records — Patient / Practitioner Providers
-----------------------------------------------------------------------------------
Read-only collaborators that supply the people a document is about and by.

Patient Provider
    ``PatientProvider`` holds an explicit, prioritised list of sources and
    returns the first non-empty patient list.  The usual configuration is
    the remote patient API (optionally with a bearer credential) followed
    by the static ``mock_data/patients.json`` document.  A source that fails
    is logged and skipped; when every source fails the provider returns an
    empty list so the session can continue.

Practitioner Provider
    Two interchangeable implementations, chosen by configuration:

      • ``StaticRosterProvider``        — fixed in-memory roster; the user
                                          selects a practitioner by id.
      • ``InjectedPractitionerProvider`` — a single externally injected object
                                          with a fixed default when the
                                          injection is absent or malformed.

Project: HealthDoc Builder
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import Settings
from schemas import PatientRecord, PractitionerRecord

logger = logging.getLogger(__name__)


class PatientSourceError(Exception):
    """Raised by a patient source that cannot produce a patient list."""


def _patient_list(data: Any) -> List[Dict[str, Any]]:
    """Accept a JSON list, ``{"patients": [...]}`` or a single patient object."""
    if isinstance(data, list):
        return [p for p in data if isinstance(p, dict)]
    if isinstance(data, dict):
        if isinstance(data.get("patients"), list):
            return [p for p in data["patients"] if isinstance(p, dict)]
        if data:
            return [data]
    return []


# ---------------------------------------------------------------------------
# Patient sources
# ---------------------------------------------------------------------------

class PatientSource:
    """Base class: ``await fetch()`` returns raw patient dicts."""

    name = "patient-source"

    async def fetch(self) -> List[Dict[str, Any]]:
        raise NotImplementedError


class RemotePatientSource(PatientSource):
    """
    Patient list served by an HTTP endpoint.

    Args:
        url:       Absolute URL of the patient list endpoint.
        token:     Optional bearer credential sent as ``Authorization``.
        timeout:   Request timeout in seconds.
        transport: Optional ``httpx`` transport (tests inject a MockTransport).
    """

    name = "remote"

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def fetch(self) -> List[Dict[str, Any]]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
                resp = await http.get(self.url, headers=self._headers())
        except httpx.HTTPError as exc:
            raise PatientSourceError(f"Patient API request failed: {exc}") from exc

        if resp.status_code not in range(200, 300):
            raise PatientSourceError(f"Patient API returned {resp.status_code}: {resp.text[:200]}")
        try:
            return _patient_list(resp.json())
        except ValueError as exc:
            raise PatientSourceError(f"Patient API returned invalid JSON: {exc}") from exc


class StaticPatientSource(PatientSource):
    """Patient list read from a JSON document on disk."""

    name = "static"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def fetch(self) -> List[Dict[str, Any]]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PatientSourceError(f"Cannot read {self.path}: {exc}") from exc
        return _patient_list(data)


class PatientProvider:
    """Try each source in order until one yields a non-empty patient list."""

    def __init__(self, sources: Sequence[PatientSource]) -> None:
        self.sources = list(sources)

    async def load(self) -> List[PatientRecord]:
        for source in self.sources:
            try:
                raw = await source.fetch()
            except PatientSourceError as exc:
                logger.warning("providers: %s patient source failed — %s", source.name, exc)
                continue
            if not raw:
                logger.info("providers: %s patient source returned no patients.", source.name)
                continue
            patients = [PatientRecord.from_source(p) for p in raw]
            logger.info("providers: loaded %d patient(s) from %s source.", len(patients), source.name)
            return patients

        logger.error("providers: no patient source produced any patients.")
        return []


def patient_provider_from_settings(settings: Settings) -> PatientProvider:
    sources: List[PatientSource] = []
    if settings.patient_api_url:
        sources.append(RemotePatientSource(settings.patient_api_url, token=settings.patient_api_token))
    if settings.patients_file:
        sources.append(StaticPatientSource(settings.patients_file))
    return PatientProvider(sources)


# ---------------------------------------------------------------------------
# Practitioner providers
# ---------------------------------------------------------------------------

DEFAULT_ROSTER: List[Dict[str, Any]] = [
    {
        "id": "prac-001",
        "name": "Dr. Meera Iyer",
        "qualification": "MBBS, MD (General Medicine)",
        "phone": "+91-9000000001",
        "email": "meera.iyer@example.org",
        "registration": {"system": "https://doctor.ndhm.gov.in", "value": "MCI-2011-04567"},
    },
    {
        "id": "prac-002",
        "name": "Dr. Arjun Rao",
        "qualification": "MBBS, MS (Orthopaedics)",
        "phone": "+91-9000000002",
        "email": "arjun.rao@example.org",
        "registration": {"system": "https://doctor.ndhm.gov.in", "value": "KMC-2015-11873"},
    },
    {
        "id": "prac-003",
        "name": "Dr. Fatima Shaikh",
        "qualification": "MBBS, DNB (Paediatrics)",
        "phone": "+91-9000000003",
        "email": "fatima.shaikh@example.org",
        "registration": {"system": "https://doctor.ndhm.gov.in", "value": "MMC-2018-20931"},
    },
]


class PractitionerProvider:
    """Base class for practitioner sources."""

    def practitioners(self) -> List[PractitionerRecord]:
        raise NotImplementedError

    def resolve(self, selection: Optional[str] = None) -> Optional[PractitionerRecord]:
        raise NotImplementedError


class StaticRosterProvider(PractitionerProvider):
    """Practitioner chosen by id from a fixed roster."""

    def __init__(self, roster: Optional[Sequence[Dict[str, Any]]] = None) -> None:
        self._roster = [PractitionerRecord.from_roster(e) for e in (roster or DEFAULT_ROSTER)]

    def practitioners(self) -> List[PractitionerRecord]:
        return list(self._roster)

    def resolve(self, selection: Optional[str] = None) -> Optional[PractitionerRecord]:
        if not selection:
            return None
        for practitioner in self._roster:
            if practitioner.id == selection:
                return practitioner
        logger.warning("providers: practitioner %r is not on the roster.", selection)
        return None


class InjectedPractitionerProvider(PractitionerProvider):
    """Single injected practitioner; the selection argument is ignored."""

    def __init__(self, injected: Any = None) -> None:
        self._practitioner = PractitionerRecord.from_injected(injected)

    def practitioners(self) -> List[PractitionerRecord]:
        return [self._practitioner]

    def resolve(self, selection: Optional[str] = None) -> Optional[PractitionerRecord]:
        return self._practitioner


def _load_injected(settings: Settings) -> Any:
    raw = settings.injected_practitioner
    if not raw and settings.injected_practitioner_file:
        try:
            raw = Path(settings.injected_practitioner_file).read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("providers: cannot read injected practitioner file — %s", exc)
            return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("providers: injected practitioner is not valid JSON — %s", exc)
        return None


def practitioner_provider_from_settings(settings: Settings) -> PractitionerProvider:
    """Select the practitioner provider named by ``PRACTITIONER_SOURCE``."""
    if settings.practitioner_source == "roster":
        return StaticRosterProvider()
    return InjectedPractitionerProvider(_load_injected(settings))
