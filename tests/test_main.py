"""
test_main.py
------------
HealthDoc Builder — ABDM Health Document Records — Test Suite for main.py
--------------------------------------------------------------------------
Tests the FastAPI server with FastAPI TestClient so no running server is
needed.  The patient list is patched in directly and the gateway is
replaced by an ``httpx.MockTransport``.

Tests cover:
    - GET /health returns 200 and required fields
    - GET /patients and /patients/{i}/abha-addresses
    - GET /practitioners for both provider kinds
    - POST /bundles/health-document with and without files, errors → 400 / 422
    - POST /bundles/health-document with submit=true (success and failure)
    - POST /bundles/invoice, including download=true
    - POST /bundles/{session_id}/submit resubmits the last Bundle
    - Session store eviction and build-error → HTTP error mapping

Run:
    pytest tests/test_main.py -v --tb=short

Project: HealthDoc Builder
"""

import json
import os
import sys
from collections import OrderedDict
from unittest.mock import patch

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

import main
from attachments import AttachmentReadError
from bundle_assembler import BundleIntegrityError
from document_builder import MissingRequiredInputError
from providers import InjectedPractitionerProvider, StaticRosterProvider
from schemas import PatientRecord
from submission_client import BundleSubmissionClient


# ── Helpers ────────────────────────────────────────────────────────────────────

_PATIENTS = [
    PatientRecord.from_source({
        "id": 101, "user_id": "5012", "name": "Asha Verma", "gender": "Female", "dob": "01-02-1990",
        "additional_attributes": {"abha_addresses": ["asha.verma@sbx", {"address": "asha90@abdm", "isPrimary": True}]},
    }),
    PatientRecord.from_source({"id": 102, "name": "Ravi Kumar", "gender": "male", "dob": "1978-11-05"}),
]


@pytest.fixture
def client():
    """TestClient with a fixed patient list, injected practitioner and fresh sessions."""
    with patch.object(main, "_patients_cache", list(_PATIENTS)), \
         patch.object(main, "_practitioner_provider", InjectedPractitionerProvider({"name": "Dr. Test", "license": "L-9"})), \
         patch.object(main, "_sessions", OrderedDict()):
        yield TestClient(main.app)


def _gateway(handler):
    """Patch main.BundleSubmissionClient so it talks to *handler*."""
    def _factory():
        return BundleSubmissionClient(endpoint="https://gateway.test/bundle", transport=httpx.MockTransport(handler))
    return patch.object(main, "BundleSubmissionClient", _factory)


# ── GET /health ────────────────────────────────────────────────────────────────

def test_health_required_fields(client):
    """GET /health returns service, version, status and timestamp."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    for key in ("service", "version", "status", "timestamp"):
        assert key in data
    assert data["status"] == "ok"


# ── Patients / practitioners ───────────────────────────────────────────────────

def test_list_patients(client):
    """Every patient is listed with its index and ABHA options."""
    data = client.get("/patients").json()
    assert [p["index"] for p in data] == [0, 1]
    assert data[0]["name"] == "Asha Verma"
    assert data[0]["abha_addresses"][0] == {"value": "asha90@abdm", "label": "asha90@abdm (primary)", "primary": True}


def test_patient_abha_addresses(client):
    """ABHA options for one patient, primary first."""
    data = client.get("/patients/0/abha-addresses").json()
    assert [a["value"] for a in data] == ["asha90@abdm", "asha.verma@sbx"]


def test_patient_abha_addresses_unknown_index(client):
    """Unknown patient index → 404."""
    assert client.get("/patients/9/abha-addresses").status_code == 404


def test_list_practitioners_injected(client):
    """The injected provider exposes one practitioner."""
    data = client.get("/practitioners").json()
    assert len(data) == 1
    assert data[0]["name"] == "Dr. Test"


def test_list_practitioners_roster(client):
    """The roster provider exposes the whole roster."""
    with patch.object(main, "_practitioner_provider", StaticRosterProvider()):
        data = client.get("/practitioners").json()
    assert [p["id"] for p in data] == ["prac-001", "prac-002", "prac-003"]


# ── POST /bundles/health-document ──────────────────────────────────────────────

def test_build_minimal_document(client):
    """Patient only → five-entry Bundle with placeholder attachment, no submission."""
    response = client.post("/bundles/health-document", data={"patient_index": "0", "title": "Prescription Record"})
    assert response.status_code == 200
    data = response.json()
    assert data["submission"] is None
    assert data["session_id"]
    types = [e["resource"]["resourceType"] for e in data["bundle"]["entry"]]
    assert types == ["Composition", "Patient", "Practitioner", "DocumentReference", "Binary"]
    patient = data["bundle"]["entry"][1]["resource"]
    assert patient["birthDate"] == "1990-02-01"


def test_build_document_with_files(client):
    """Uploaded files become DocumentReference/Binary pairs in upload order."""
    response = client.post(
        "/bundles/health-document",
        data={"patient_index": "0", "title": "Lab Results", "abha_address": "asha.verma@sbx"},
        files=[
            ("files", ("cbc.pdf", b"%PDF-1.4 cbc", "application/pdf")),
            ("files", ("xray.png", b"\x89PNG", "image/png")),
        ],
    )
    assert response.status_code == 200
    entries = response.json()["bundle"]["entry"]
    docrefs = [e["resource"] for e in entries if e["resource"]["resourceType"] == "DocumentReference"]
    assert [d["content"][0]["attachment"]["title"] for d in docrefs] == ["cbc.pdf", "xray.png"]
    assert docrefs[1]["content"][0]["attachment"]["contentType"] == "image/png"


def test_build_document_without_patient(client):
    """No patient selected → 400 naming the field."""
    response = client.post("/bundles/health-document", data={"title": "X"})
    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "patient"


def test_build_document_without_title(client):
    """Blank title → 400."""
    response = client.post("/bundles/health-document", data={"patient_index": "0"})
    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "title"


def test_build_document_roster_requires_selection(client):
    """With the roster provider, a missing practitioner id → 400."""
    with patch.object(main, "_practitioner_provider", StaticRosterProvider()):
        response = client.post("/bundles/health-document", data={"patient_index": "0", "title": "X"})
    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "practitioner"


def test_build_document_invalid_attester_mode(client):
    """An unknown attester mode → 422."""
    response = client.post("/bundles/health-document",
                           data={"patient_index": "0", "title": "X", "attester_mode": "notary"})
    assert response.status_code == 422


def test_build_and_submit_success(client):
    """submit=true posts the Bundle with the numeric patient reference."""
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "ok"})

    with _gateway(handler):
        response = client.post("/bundles/health-document",
                               data={"patient_index": "0", "title": "X", "submit": "true"})
    data = response.json()
    assert data["submission"]["success"] is True
    assert data["submission"]["response"] == {"status": "ok"}
    assert seen["body"]["patient"] == 5012
    assert seen["body"]["bundle"]["id"] == data["bundle"]["id"]


def test_build_and_submit_failure_still_returns_bundle(client):
    """A rejected submission is reported and the Bundle is still returned."""
    with _gateway(lambda request: httpx.Response(422, json={"detail": "Invalid bundle"})):
        response = client.post("/bundles/health-document",
                               data={"patient_index": "0", "title": "X", "submit": "true"})
    assert response.status_code == 200
    data = response.json()
    assert data["bundle"]["resourceType"] == "Bundle"
    assert data["submission"] == {"success": False, "status_code": 422, "response": None, "error": "Invalid bundle"}


# ── POST /bundles/{session_id}/submit ──────────────────────────────────────────

def test_resubmit_last_bundle(client):
    """Resubmission sends the session's last Bundle again."""
    bundle_id = client.post("/bundles/health-document",
                            data={"patient_index": "0", "title": "X", "session_id": "sess-1"}).json()["bundle"]["id"]
    seen = []

    def handler(request):
        seen.append(json.loads(request.content)["bundle"]["id"])
        return httpx.Response(200, json={})

    with _gateway(handler):
        response = client.post("/bundles/sess-1/submit")
    assert response.status_code == 200
    assert response.json()["bundle_id"] == bundle_id
    assert seen == [bundle_id]


def test_resubmit_unknown_session(client):
    """No Bundle in the session → 404."""
    assert client.post("/bundles/nope/submit").status_code == 404


# ── POST /bundles/invoice ──────────────────────────────────────────────────────

_INVOICE_BODY = {
    "patient_index": 0,
    "abha_address": "asha90@abdm",
    "invoice": {
        "invoice_number": "INV-100",
        "invoice_date": "09-03-2024",
        "line_items": [{"description": "Consultation", "amount": 500}, {"description": "X-Ray", "amount": "750.50"}],
    },
}


def test_build_invoice(client):
    """Invoice bundles total the line items in INR."""
    response = client.post("/bundles/invoice", json=_INVOICE_BODY)
    assert response.status_code == 200
    entries = response.json()["bundle"]["entry"]
    assert [e["resource"]["resourceType"] for e in entries] == \
        ["Composition", "Patient", "Practitioner", "Organization", "Invoice"]
    invoice = entries[-1]["resource"]
    assert invoice["totalNet"] == {"value": 1250.5, "currency": "INR"}
    assert invoice["date"] == "2024-03-09"


def test_build_invoice_download(client):
    """download=true returns the Bundle as an application/fhir+json attachment."""
    response = client.post("/bundles/invoice?download=true", json=_INVOICE_BODY)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/fhir+json")
    assert response.headers["content-disposition"].startswith('attachment; filename="invoice-bundle-')
    assert response.json()["resourceType"] == "Bundle"


def test_build_invoice_without_line_items(client):
    """No line items → 400."""
    body = dict(_INVOICE_BODY, invoice={"line_items": []})
    response = client.post("/bundles/invoice", json=body)
    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "line_items"


def test_build_invoice_without_abha(client):
    """No ABHA address → 400."""
    body = dict(_INVOICE_BODY, abha_address="")
    response = client.post("/bundles/invoice", json=body)
    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "abha_address"


# ── Session store ──────────────────────────────────────────────────────────────

def test_oldest_session_evicted_above_limit(client):
    """Sessions beyond MAX_SESSIONS are dropped, least recently used first."""
    with patch.object(main, "MAX_SESSIONS", 2):
        for sid in ("s-1", "s-2", "s-3"):
            response = client.post("/bundles/health-document",
                                   data={"patient_index": "0", "title": "X", "session_id": sid})
            assert response.status_code == 200
    assert list(main._sessions) == ["s-2", "s-3"]
    assert client.post("/bundles/s-1/submit").status_code == 404


def test_reused_session_is_kept_over_older_ones(client):
    """Building again in a session marks it as recently used."""
    with patch.object(main, "MAX_SESSIONS", 2):
        for sid in ("s-1", "s-2", "s-1", "s-3"):
            client.post("/bundles/health-document",
                        data={"patient_index": "0", "title": "X", "session_id": sid})
    assert list(main._sessions) == ["s-1", "s-3"]


def test_anonymous_builds_do_not_grow_store(client):
    """Builds without a session_id stay within the limit."""
    with patch.object(main, "MAX_SESSIONS", 3):
        for _ in range(6):
            client.post("/bundles/health-document", data={"patient_index": "0", "title": "X"})
    assert len(main._sessions) == 3


# ── Error mapping ──────────────────────────────────────────────────────────────

def test_build_errors_map_to_http_errors():
    """Each build failure maps to its status code and structured detail."""
    missing = main._to_http_error(MissingRequiredInputError("title", "Document title is required."))
    assert missing.status_code == 400
    assert missing.detail == {"field": "title", "error": "Document title is required."}

    unreadable = main._to_http_error(AttachmentReadError("scan.pdf", "disk error"))
    assert unreadable.status_code == 422
    assert unreadable.detail["filename"] == "scan.pdf"
    assert "disk error" in unreadable.detail["error"]

    broken = main._to_http_error(BundleIntegrityError(["dangling urn:uuid:x"]))
    assert broken.status_code == 500
    assert broken.detail["problems"] == ["dangling urn:uuid:x"]


def test_unreadable_upload_returns_422(client):
    """A file that fails to read → 422 naming the file."""
    async def _fail(*args, **kwargs):
        raise AttachmentReadError("cbc.pdf", "stream closed")

    with patch("document_builder.encode_attachments", _fail):
        response = client.post("/bundles/health-document",
                               data={"patient_index": "0", "title": "X"},
                               files=[("files", ("cbc.pdf", b"%PDF", "application/pdf"))])
    assert response.status_code == 422
    assert response.json()["detail"]["filename"] == "cbc.pdf"
