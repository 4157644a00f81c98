"""
main.py
-------
HealthDoc Builder — ABDM Health Document Records — FastAPI server
------------------------------------------------------------------
Exposes the document builder as a REST API for the clinician-facing form.
Patients are loaded once per process through the configured Patient
Provider; the practitioner comes from the configured Practitioner Provider.
Each build runs inside a per-session ``BuildSession`` so overlapping builds
from one session are serialised and the last Bundle stays available for
resubmission.

Endpoints:
    GET  /health                           — Service health check
    GET  /patients                         — Patient list with ABHA address options
    GET  /patients/{index}/abha-addresses  — ABHA options for one patient
    GET  /practitioners                    — Selectable practitioner(s)
    POST /bundles/health-document          — Build (and optionally submit) a health document Bundle
    POST /bundles/invoice                  — Build (and optionally submit / download) an invoice Bundle
    POST /bundles/{session_id}/submit      — Resubmit the session's last Bundle

Project: HealthDoc Builder
"""

import json
import logging
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field, ValidationError

from attachments import AttachmentReadError
from bundle_assembler import BundleIntegrityError
from config import get_settings
from document_builder import BuildSession, MissingRequiredInputError
from providers import patient_provider_from_settings, practitioner_provider_from_settings
from schemas import DocumentForm, InvoiceForm, PatientRecord
from submission_client import BundleSubmissionClient, SubmissionError

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "HealthDoc Builder"

_patient_provider = patient_provider_from_settings(settings)
_practitioner_provider = practitioner_provider_from_settings(settings)

# Loaded on first use; read-only afterwards.
_patients_cache: Optional[List[PatientRecord]] = None

# ── In-memory session store ────────────────────────────────────────────────────
# Least recently used sessions are dropped once MAX_SESSIONS is exceeded.
MAX_SESSIONS = settings.max_sessions
_sessions: "OrderedDict[str, BuildSession]" = OrderedDict()

# ── FastAPI app ────────────────────────────────────────────────────────────────

app = FastAPI(
    title=SERVICE_NAME,
    version=VERSION,
    description="Builds ABDM/NRCES FHIR document bundles from clinician form input.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request models ─────────────────────────────────────────────────────────────

class InvoiceRequest(BaseModel):
    """Request body for POST /bundles/invoice."""
    patient_index: Optional[int] = None
    abha_address: Optional[str] = None
    practitioner_id: Optional[str] = None
    invoice: InvoiceForm = Field(default_factory=InvoiceForm)
    session_id: Optional[str] = None
    submit: bool = False


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _get_patients() -> List[PatientRecord]:
    global _patients_cache
    if _patients_cache is None:
        _patients_cache = await _patient_provider.load()
    return _patients_cache


async def _select_patient(index: Optional[int]) -> Optional[PatientRecord]:
    if index is None:
        return None
    patients = await _get_patients()
    if 0 <= index < len(patients):
        return patients[index]
    return None


def _get_session(session_id: Optional[str]) -> BuildSession:
    """Return the existing session or start a new one, evicting the oldest."""
    key = session_id or str(uuid.uuid4())
    if key in _sessions:
        _sessions.move_to_end(key)
        return _sessions[key]
    _sessions[key] = BuildSession(key)
    while len(_sessions) > MAX_SESSIONS:
        evicted, _session = _sessions.popitem(last=False)
        logger.info("main: session %s evicted (limit %d).", evicted, MAX_SESSIONS)
    return _sessions[key]


def _patient_summary(index: int, patient: PatientRecord) -> dict:
    return {
        "index":          index,
        "name":           patient.name,
        "gender":         patient.gender,
        "dob":            patient.dob,
        "abha_ref":       patient.abha_ref,
        "abha_addresses": [a.model_dump() for a in patient.abha_addresses],
    }


async def _submit_bundle(bundle: dict, patient: Optional[PatientRecord]) -> dict:
    """
    Submit *bundle* once and report the outcome as a structured dict.

    Returns:
        dict: {"success": bool, "status_code": int | None, "response": dict | None,
               "error": str | None}
    """
    reference = patient.submission_reference if patient else None
    try:
        async with BundleSubmissionClient() as client:
            response = await client.submit(bundle, reference)
    except SubmissionError as exc:
        return {"success": False, "status_code": exc.status_code, "response": None, "error": exc.detail}
    return {"success": True, "status_code": None, "response": response, "error": None}


def _to_http_error(exc: Exception) -> HTTPException:
    """Map a build failure to the HTTP error returned to the client."""
    if isinstance(exc, MissingRequiredInputError):
        return HTTPException(status_code=400, detail={"field": exc.field, "error": exc.message})
    if isinstance(exc, AttachmentReadError):
        return HTTPException(status_code=422, detail={"filename": exc.filename, "error": str(exc)})
    return HTTPException(status_code=500, detail={"error": str(exc), "problems": getattr(exc, "problems", [])})


# ── Endpoints ──────────────────────────────────────────────────────────────────

@app.get("/health")
def health_check() -> dict:
    """
    Return service health status.

    Returns:
        dict: service, version, status, timestamp.
    """
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/patients")
async def list_patients() -> list:
    """Return every patient with its index and normalised ABHA addresses."""
    patients = await _get_patients()
    return [_patient_summary(i, p) for i, p in enumerate(patients)]


@app.get("/patients/{index}/abha-addresses")
async def patient_abha_addresses(index: int) -> list:
    """
    Return the selectable ABHA addresses for one patient, primary first.

    Raises:
        HTTPException 404: unknown patient index.
    """
    patient = await _select_patient(index)
    if patient is None:
        raise HTTPException(status_code=404, detail="Patient not found.")
    return [a.model_dump() for a in patient.abha_addresses]


@app.get("/practitioners")
def list_practitioners() -> list:
    return [p.model_dump() for p in _practitioner_provider.practitioners()]


@app.post("/bundles/health-document")
async def build_health_document(
    patient_index: Optional[int] = Form(None),
    abha_address: Optional[str] = Form(None),
    practitioner_id: Optional[str] = Form(None),
    status: str = Form("final"),
    title: str = Form(""),
    authored_at: Optional[str] = Form(None),
    encounter_text: str = Form(""),
    custodian_name: str = Form(""),
    attester_mode: str = Form("professional"),
    attester_party_type: str = Form("Practitioner"),
    attester_org_name: str = Form(""),
    session_id: Optional[str] = Form(None),
    submit: bool = Form(False),
    files: Optional[List[UploadFile]] = File(None),
) -> dict:
    """
    Build a health document Bundle from multipart form fields and files.

    When ``submit`` is true the Bundle is posted to the gateway; a failed
    submission is reported in ``submission`` and the Bundle is still returned.

    Returns:
        dict: {"session_id": str, "bundle": dict, "submission": dict | None}

    Raises:
        HTTPException 400: missing required input (patient, practitioner, title, status).
        HTTPException 422: invalid form values or an unreadable attachment.
    """
    try:
        form = DocumentForm(
            status=status,
            title=title,
            authored_at=authored_at,
            encounter_text=encounter_text,
            custodian_name=custodian_name,
            attester_mode=attester_mode,
            attester_party_type=attester_party_type,
            attester_org_name=attester_org_name,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors()[0]["msg"])

    patient = await _select_patient(patient_index)
    practitioner = _practitioner_provider.resolve(practitioner_id)
    session = _get_session(session_id)

    try:
        bundle = await session.build_health_document(
            patient,
            practitioner,
            form,
            files or [],
            abha_address=abha_address or None,
            with_narrative=settings.narrative_enabled,
        )
    except (MissingRequiredInputError, AttachmentReadError, BundleIntegrityError) as exc:
        logger.warning("main: health document build failed — %s", exc)
        raise _to_http_error(exc) from exc

    submission = await _submit_bundle(bundle, patient) if submit else None
    return {"session_id": session.session_id, "bundle": bundle, "submission": submission}


@app.post("/bundles/invoice")
async def build_invoice(
    request: InvoiceRequest,
    download: bool = Query(False, description="Return the bundle as a downloadable JSON file"),
):
    """
    Build an InvoiceRecord Bundle.

    Returns:
        dict: {"session_id", "bundle", "submission"}, or an
        ``application/fhir+json`` attachment when ``download`` is true.

    Raises:
        HTTPException 400: missing required input.
    """
    patient = await _select_patient(request.patient_index)
    practitioner = _practitioner_provider.resolve(request.practitioner_id)
    session = _get_session(request.session_id)

    try:
        bundle = await session.build_invoice(
            patient,
            practitioner,
            request.invoice,
            abha_address=request.abha_address or None,
            with_narrative=settings.narrative_enabled,
        )
    except (MissingRequiredInputError, BundleIntegrityError) as exc:
        logger.warning("main: invoice build failed — %s", exc)
        raise _to_http_error(exc) from exc

    if download:
        filename = f"invoice-bundle-{int(time.time() * 1000)}.json"
        return Response(
            content=json.dumps(bundle, indent=2),
            media_type="application/fhir+json",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    submission = await _submit_bundle(bundle, patient) if request.submit else None
    return {"session_id": session.session_id, "bundle": bundle, "submission": submission}


@app.post("/bundles/{session_id}/submit")
async def resubmit_bundle(session_id: str) -> dict:
    """
    Submit the last Bundle built in *session_id* again.

    Raises:
        HTTPException 404: no Bundle has been built in this session.
    """
    session = _sessions.get(session_id)
    if session is None or session.last_bundle is None:
        raise HTTPException(status_code=404, detail="No bundle has been built in this session.")
    submission = await _submit_bundle(session.last_bundle, session.last_patient)
    return {"session_id": session_id, "bundle_id": session.last_bundle.get("id"), "submission": submission}
