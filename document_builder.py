"""
document_builder.py
-------------------
HealthDoc Builder — ABDM Health Document Records — Build Orchestration
----------------------------------------------------------------------
One "build" turns the current form state into a finished document Bundle:

  1. Validate required input (patient, practitioner, title, status; for
     invoices also an ABHA address and at least one line item).  Nothing is
     built when any check fails.
  2. Mint one identifier per record.
  3. Await every attachment (the only asynchronous step); the Composition
     section cannot be sealed until all DocumentReference ids are known.
  4. Build each record, assemble the Bundle, enforce reference integrity.

``BuildSession`` serialises builds for one user session with an
``asyncio.Lock`` and keeps the last Bundle so it can be inspected or
resubmitted after a failed submission.

Project: HealthDoc Builder
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from attachments import encode_attachments
from bundle_assembler import assemble_bundle
from fhir_helpers import local_input_to_offset_timestamp, new_id, to_offset_timestamp
from fhir_mapper import (
    build_attachment_pair,
    build_composition,
    build_encounter,
    build_invoice,
    build_invoice_composition,
    build_organization,
    build_patient,
    build_practitioner,
)
from schemas import DocumentForm, InvoiceForm, PatientRecord, PractitionerRecord

logger = logging.getLogger(__name__)

COMPOSITION_STATUSES = ("preliminary", "final", "amended", "entered-in-error")

_ISSUER_ORG_NAME = "Issuer Organization"


class MissingRequiredInputError(ValueError):
    """A required input is absent or invalid; the build was not started."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _require_people(
    patient: Optional[PatientRecord],
    practitioner: Optional[PractitionerRecord],
) -> None:
    if patient is None:
        raise MissingRequiredInputError("patient", "Please select a patient (required).")
    if practitioner is None:
        raise MissingRequiredInputError("practitioner", "Please select a practitioner (required).")


def validate_document_input(
    patient: Optional[PatientRecord],
    practitioner: Optional[PractitionerRecord],
    form: DocumentForm,
) -> None:
    """Raise ``MissingRequiredInputError`` for the first missing required field."""
    _require_people(patient, practitioner)
    if not form.title:
        raise MissingRequiredInputError("title", "Title is required.")
    if not form.status:
        raise MissingRequiredInputError("status", "Status is required.")
    if form.status not in COMPOSITION_STATUSES:
        raise MissingRequiredInputError(
            "status", f"Status must be one of: {', '.join(COMPOSITION_STATUSES)}."
        )


def validate_invoice_input(
    patient: Optional[PatientRecord],
    practitioner: Optional[PractitionerRecord],
    form: InvoiceForm,
    abha_address: Optional[str],
) -> None:
    _require_people(patient, practitioner)
    if not abha_address:
        raise MissingRequiredInputError("abha_address", "Please select an ABHA address for the patient.")
    if not form.line_items:
        raise MissingRequiredInputError("line_items", "At least one line item is required.")


# ---------------------------------------------------------------------------
# Health document record
# ---------------------------------------------------------------------------

async def build_health_document_bundle(
    patient: Optional[PatientRecord],
    practitioner: Optional[PractitionerRecord],
    form: DocumentForm,
    files: Sequence[Any] = (),
    *,
    abha_address: Optional[str] = None,
    with_narrative: bool = True,
) -> Dict[str, Any]:
    """
    Build a health document Bundle.

    Args:
        patient:        Selected patient, or ``None``.
        practitioner:   Resolved practitioner, or ``None``.
        form:           Composition fields.
        files:          Uploaded files (see ``attachments``); empty → one
                        placeholder attachment.
        abha_address:   Chosen ABHA address; defaults to the patient's first
                        (primary) address.
        with_narrative: Attach XHTML narratives to every resource.

    Returns:
        dict: The validated FHIR document Bundle.

    Raises:
        MissingRequiredInputError: before anything is built.
        attachments.AttachmentReadError: when a selected file cannot be read.
        bundle_assembler.BundleIntegrityError: on a broken reference graph.
    """
    validate_document_input(patient, practitioner, form)

    if abha_address is None:
        abha_address = patient.default_abha_address()
    authored_on = local_input_to_offset_timestamp(form.authored_at)

    composition_id  = new_id()
    patient_id      = new_id()
    practitioner_id = new_id()
    encounter_id    = new_id() if form.encounter_text else None
    custodian_id    = new_id() if form.custodian_name else None
    attester_org_id = (
        new_id()
        if form.attester_party_type == "Organization" and form.attester_org_name
        else None
    )

    attachments = await encode_attachments(files)
    pairs = [
        build_attachment_pair(new_id(), new_id(), patient_id, att, authored_on, with_narrative=with_narrative)
        for att in attachments
    ]

    composition = build_composition(
        composition_id,
        form=form,
        authored_on=authored_on,
        patient_id=patient_id,
        practitioner_id=practitioner_id,
        practitioner_name=practitioner.name,
        document_reference_ids=[docref["id"] for _binary, docref in pairs],
        encounter_id=encounter_id,
        custodian_org_id=custodian_id,
        attester_org_id=attester_org_id,
        with_narrative=with_narrative,
    )

    records: List[Optional[Dict[str, Any]]] = [
        build_patient(patient, patient_id, abha_address, with_narrative=with_narrative),
        build_practitioner(practitioner, practitioner_id, with_narrative=with_narrative),
        build_encounter(encounter_id, patient_id, form.encounter_text, with_narrative=with_narrative),
        build_organization(custodian_id, form.custodian_name, with_narrative=with_narrative),
        build_organization(attester_org_id, form.attester_org_name, with_narrative=with_narrative),
    ]

    return assemble_bundle(composition, records, pairs, id_prefix="HealthDocumentBundle")


# ---------------------------------------------------------------------------
# Invoice record
# ---------------------------------------------------------------------------

def build_invoice_bundle(
    patient: Optional[PatientRecord],
    practitioner: Optional[PractitionerRecord],
    form: InvoiceForm,
    *,
    abha_address: Optional[str] = None,
    with_narrative: bool = True,
) -> Dict[str, Any]:
    """
    Build an InvoiceRecord Bundle: Composition, Patient, Practitioner,
    issuer Organization, Invoice.

    Raises:
        MissingRequiredInputError: before anything is built.
    """
    validate_invoice_input(patient, practitioner, form, abha_address)

    invoice_number = form.invoice_number or f"INV-{int(time.time() * 1000)}"
    authored_on = to_offset_timestamp()

    composition_id  = new_id()
    patient_id      = new_id()
    practitioner_id = new_id()
    issuer_id       = new_id()
    invoice_id      = new_id()

    composition = build_invoice_composition(
        composition_id,
        invoice_id=invoice_id,
        invoice_number=invoice_number,
        patient_id=patient_id,
        patient_name=patient.name,
        practitioner_id=practitioner_id,
        practitioner_name=practitioner.name,
        authored_on=authored_on,
        with_narrative=with_narrative,
    )
    records = [
        build_patient(patient, patient_id, abha_address, with_narrative=with_narrative),
        build_practitioner(practitioner, practitioner_id, with_narrative=with_narrative),
        build_organization(issuer_id, _ISSUER_ORG_NAME, with_narrative=with_narrative),
        build_invoice(
            invoice_id,
            form=form,
            invoice_number=invoice_number,
            patient_id=patient_id,
            patient_name=patient.name,
            issuer_org_id=issuer_id,
            with_narrative=with_narrative,
        ),
    ]
    return assemble_bundle(composition, records, id_prefix="InvoiceBundle")


# ---------------------------------------------------------------------------
# Per-session serialisation
# ---------------------------------------------------------------------------

class BuildSession:
    """
    Serialises builds for one user session and remembers the last result.

    Example::

        session = BuildSession("abc")
        bundle = await session.build_health_document(patient, practitioner, form, files)
        session.last_bundle is bundle   # → True
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.last_bundle: Optional[Dict[str, Any]] = None
        self.last_patient: Optional[PatientRecord] = None
        self._lock = asyncio.Lock()

    async def build_health_document(self, patient, practitioner, form, files=(), **kwargs) -> Dict[str, Any]:
        async with self._lock:
            bundle = await build_health_document_bundle(patient, practitioner, form, files, **kwargs)
            self.last_bundle, self.last_patient = bundle, patient
            return bundle

    async def build_invoice(self, patient, practitioner, form, **kwargs) -> Dict[str, Any]:
        async with self._lock:
            bundle = build_invoice_bundle(patient, practitioner, form, **kwargs)
            self.last_bundle, self.last_patient = bundle, patient
            return bundle
