"""
fhir_mapper.py
--------------
HealthDoc Builder — ABDM Health Document Records — FHIR R4 Record Builders
---------------------------------------------------------------------------
Translates normalised form state (``schemas.PatientRecord``,
``schemas.PractitionerRecord``, ``schemas.DocumentForm`` /
``schemas.InvoiceForm``, encoded attachments) into the individual FHIR R4
resources of an NRCES/ABDM document Bundle.

Every builder is a pure function of its inputs plus identifiers that the
caller minted beforehand; no builder generates ids or reads the clock except
``build_encounter`` (period = build time) and the Composition/Invoice
defaults noted below.  Cross-references always use the bundle-local
``urn:uuid:<id>`` scheme from ``fhir_helpers.local_reference``.

Resources produced:
  • Patient, Practitioner, Organization (custodian / attester / issuer)
  • Encounter           — minimal ambulatory wrapper around free text
  • Binary + DocumentReference — one pair per attachment
  • Composition         — health document (LOINC 34133-9) or invoice (INVR)
  • Invoice             — line items with base price components, INR totals

Public API:
    build_patient(), build_practitioner(), build_organization(),
    build_encounter(), build_attachment_pair(), build_composition(),
    build_invoice(), build_invoice_composition(), resolve_attester()

Project: HealthDoc Builder
"""

from __future__ import annotations

import html
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from attachments import EncodedAttachment
from fhir_helpers import (
    NARRATIVE_LANG,
    build_narrative,
    local_reference,
    to_canonical_date,
    to_offset_timestamp,
)
from schemas import (
    DocumentForm,
    InvoiceForm,
    PatientRecord,
    PractitionerRecord,
    build_address,
    build_telecom,
)

logger = logging.getLogger(__name__)

_Resource = Dict[str, Any]   # internal type alias

# ---------------------------------------------------------------------------
# Profiles and code systems
# ---------------------------------------------------------------------------

_NRCES_SD = "https://nrces.in/ndhm/fhir/r4/StructureDefinition"
_HL7_SD = "http://hl7.org/fhir/StructureDefinition"

PROFILES: Dict[str, str] = {
    "Patient":           f"{_HL7_SD}/Patient",
    "Practitioner":      f"{_NRCES_SD}/Practitioner",
    "Organization":      f"{_HL7_SD}/Organization",
    "Encounter":         f"{_HL7_SD}/Encounter",
    "Binary":            f"{_NRCES_SD}/Binary",
    "DocumentReference": f"{_HL7_SD}/DocumentReference",
    "Composition":       f"{_HL7_SD}/Composition",
    "Invoice":           f"{_NRCES_SD}/Invoice",
    "InvoiceRecord":     f"{_NRCES_SD}/InvoiceRecord",
    "Bundle":            f"{_HL7_SD}/Bundle",
}

_LOINC_SYSTEM        = "http://loinc.org"
_V2_0203_SYSTEM      = "http://terminology.hl7.org/CodeSystem/v2-0203"
_V3_ACT_CODE_SYSTEM  = "http://terminology.hl7.org/CodeSystem/v3-ActCode"
_HEALTH_ID_SYSTEM    = "https://healthid.ndhm.gov.in"
_ABHA_SYSTEM         = "https://abdm.gov.in/abha"
_DOCTOR_SYSTEM       = "https://doctor.ndhm.gov.in"
_FACILITY_SYSTEM     = "https://facility.ndhm.gov.in"
_INVOICE_ID_SYSTEM   = "https://healthdoc.local/invoices"
_NRCES_CS            = "http://nrces.in/CodeSystem"

# Placeholder HIP facility code; a real deployment substitutes its own.
PLACEHOLDER_FACILITY_ID = "HIP123456"

COMPOSITION_DOC_TYPE: Dict[str, str] = {
    "system":  _LOINC_SYSTEM,
    "code":    "34133-9",
    "display": "Summary of episode note",
}
DOCUMENT_REFERENCE_TYPE: Dict[str, str] = {
    "system":  _LOINC_SYSTEM,
    "code":    "34108-1",
    "display": "Outpatient Note",
}
INVOICE_RECORD_TYPE: Dict[str, str] = {
    "system":  f"{_NRCES_CS}/document-type",
    "code":    "INVR",
    "display": "Invoice Record",
}
_CURRENCY = "INR"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _base(resource_type: str, resource_id: str, profile: Optional[str] = None) -> _Resource:
    return {
        "resourceType": resource_type,
        "id":           resource_id,
        "language":     NARRATIVE_LANG,
        "meta":         {"profile": [profile or PROFILES[resource_type]]},
    }


def _ref(resource_id: str, display: Optional[str] = None) -> Dict[str, str]:
    reference = {"reference": local_reference(resource_id)}
    if display:
        reference["display"] = display
    return reference


def _para(*lines: str) -> str:
    return "".join(f"<p>{html.escape(line)}</p>" for line in lines if line)


def _money(value: float) -> Dict[str, Any]:
    return {"value": round(float(value), 2), "currency": _CURRENCY}


# ---------------------------------------------------------------------------
# Patient / Practitioner / Organization
# ---------------------------------------------------------------------------

def build_patient(
    patient: PatientRecord,
    patient_id: str,
    abha_address: Optional[str] = None,
    *,
    with_narrative: bool = True,
) -> _Resource:
    """
    Construct the FHIR Patient resource.

    Identifier order is fixed: the local medical-record identifier first
    (mrn → user_ref_id → abha_ref → source id), then the ABHA number when the
    source carries one.  Unparseable birth dates are omitted, never guessed.
    """
    identifiers: List[Dict[str, Any]] = []
    if patient.local_identifier:
        identifiers.append({
            "type": {
                "coding": [{"system": _V2_0203_SYSTEM, "code": "MR", "display": "Medical record number"}],
                "text": "MR",
            },
            "system": _HEALTH_ID_SYSTEM,
            "value":  patient.local_identifier,
        })
    if patient.abha_ref:
        identifiers.append({"system": _ABHA_SYSTEM, "value": patient.abha_ref})

    resource = _base("Patient", patient_id)
    if with_narrative:
        resource["text"] = build_narrative(
            "Patient",
            _para(patient.name, " ".join(p for p in (patient.gender, patient.birth_date or patient.dob) if p)),
        )
    if identifiers:
        resource["identifier"] = identifiers
    if patient.name:
        resource["name"] = [{"text": patient.name}]
    if patient.gender:
        resource["gender"] = patient.gender
    if patient.birth_date:
        resource["birthDate"] = patient.birth_date

    telecom = build_telecom(patient, abha_address)
    if telecom:
        resource["telecom"] = telecom
    address = build_address(patient)
    if address:
        resource["address"] = address
    return resource


def build_practitioner(
    practitioner: PractitionerRecord,
    practitioner_id: str,
    *,
    with_narrative: bool = True,
) -> _Resource:
    """Construct the FHIR Practitioner resource with its licence identifier."""
    resource = _base("Practitioner", practitioner_id)
    if with_narrative:
        resource["text"] = build_narrative("Practitioner", _para(practitioner.name, practitioner.qualification))

    resource["identifier"] = [{
        "type": {
            "coding": [{"system": _V2_0203_SYSTEM, "code": "MD", "display": "Medical License number"}],
        },
        "system": practitioner.registration_system or _DOCTOR_SYSTEM,
        "value":  practitioner.license,
    }]
    resource["name"] = [{"text": practitioner.name}]

    telecom = []
    if practitioner.phone:
        telecom.append({"system": "phone", "value": practitioner.phone, "use": "work"})
    if practitioner.email:
        telecom.append({"system": "email", "value": practitioner.email, "use": "work"})
    if telecom:
        resource["telecom"] = telecom

    if practitioner.qualification:
        resource["qualification"] = [{
            "identifier": [{"system": practitioner.registration_system or _DOCTOR_SYSTEM,
                            "value": practitioner.license}],
            "code": {"text": practitioner.qualification},
        }]
    return resource


def build_organization(
    org_id: Optional[str],
    name: Optional[str],
    *,
    with_narrative: bool = True,
) -> Optional[_Resource]:
    """
    Construct an Organization, or return ``None`` when no name was entered.

    Every Organization carries the placeholder HIP facility identifier.
    """
    name = (name or "").strip()
    if not org_id or not name:
        return None
    resource = _base("Organization", org_id)
    if with_narrative:
        resource["text"] = build_narrative("Organization", _para(name))
    resource["identifier"] = [{"system": _FACILITY_SYSTEM, "value": PLACEHOLDER_FACILITY_ID}]
    resource["name"] = name
    return resource


# ---------------------------------------------------------------------------
# Encounter
# ---------------------------------------------------------------------------

def build_encounter(
    encounter_id: Optional[str],
    patient_id: str,
    reference_text: Optional[str],
    *,
    with_narrative: bool = True,
) -> Optional[_Resource]:
    """
    Wrap the free-text encounter reference in a minimal ambulatory Encounter.

    Returns ``None`` when no text was entered.  The period start and end are
    both the build time, not the document's authored time.
    """
    text = (reference_text or "").strip()
    if not encounter_id or not text:
        return None
    now = to_offset_timestamp()
    resource = _base("Encounter", encounter_id)
    if with_narrative:
        resource["text"] = build_narrative("Encounter", _para(text))
    resource.update({
        "identifier": [{"value": text}],
        "status":     "finished",
        "class":      {"system": _V3_ACT_CODE_SYSTEM, "code": "AMB", "display": "ambulatory"},
        "subject":    _ref(patient_id),
        "period":     {"start": now, "end": now},
    })
    return resource


# ---------------------------------------------------------------------------
# Binary + DocumentReference
# ---------------------------------------------------------------------------

def build_attachment_pair(
    binary_id: str,
    docref_id: str,
    patient_id: str,
    attachment: EncodedAttachment,
    authored_on: str,
    *,
    with_narrative: bool = True,
) -> Tuple[_Resource, _Resource]:
    """
    Construct the ``(Binary, DocumentReference)`` pair for one attachment.

    The DocumentReference's ``content[0].attachment.url`` is the Binary's
    local reference, so the pair is resolvable inside the Bundle.
    """
    binary = _base("Binary", binary_id)
    binary["contentType"] = attachment.content_type
    binary["data"] = attachment.data

    docref = _base("DocumentReference", docref_id)
    if with_narrative:
        docref["text"] = build_narrative("DocumentReference", _para(attachment.title))
    docref.update({
        "status":  "current",
        "type":    {"coding": [dict(DOCUMENT_REFERENCE_TYPE)], "text": DOCUMENT_REFERENCE_TYPE["display"]},
        "subject": _ref(patient_id),
        "date":    authored_on,
        "content": [{
            "attachment": {
                "contentType": attachment.content_type,
                "title":       attachment.title,
                "url":         local_reference(binary_id),
            }
        }],
    })
    return binary, docref


# ---------------------------------------------------------------------------
# Composition (health document)
# ---------------------------------------------------------------------------

def resolve_attester(
    form: DocumentForm,
    practitioner_id: str,
    attester_org_id: Optional[str],
) -> Dict[str, Any]:
    """
    Return the single Composition.attester entry.

    Policy: the party the user chose wins (Practitioner, or Organization when
    an organisation name produced ``attester_org_id``).  Otherwise the
    practitioner is the default ``official`` attester.
    """
    if form.attester_party_type == "Organization" and attester_org_id:
        return {"mode": form.attester_mode, "party": _ref(attester_org_id)}
    if form.attester_party_type == "Practitioner":
        return {"mode": form.attester_mode, "party": _ref(practitioner_id)}
    return {"mode": "official", "party": _ref(practitioner_id)}


def build_composition(
    composition_id: str,
    *,
    form: DocumentForm,
    authored_on: str,
    patient_id: str,
    practitioner_id: str,
    practitioner_name: str,
    document_reference_ids: Sequence[str],
    encounter_id: Optional[str] = None,
    custodian_org_id: Optional[str] = None,
    attester_org_id: Optional[str] = None,
    with_narrative: bool = True,
) -> _Resource:
    """
    Construct the health-document Composition (the Bundle's document root).

    The single section references every DocumentReference in input order.
    """
    resource = _base("Composition", composition_id)
    if with_narrative:
        resource["text"] = build_narrative(
            "Composition", _para(form.title, f"Author: {practitioner_name}")
        )
    resource.update({
        "status":  form.status,
        "type":    {"coding": [dict(COMPOSITION_DOC_TYPE)], "text": COMPOSITION_DOC_TYPE["display"]},
        "subject": _ref(patient_id),
    })
    if encounter_id:
        resource["encounter"] = _ref(encounter_id)
    resource.update({
        "date":     authored_on,
        "author":   [_ref(practitioner_id, practitioner_name)],
        "title":    form.title,
        "attester": [resolve_attester(form, practitioner_id, attester_org_id)],
    })
    if custodian_org_id:
        resource["custodian"] = _ref(custodian_org_id)
    resource["section"] = [{
        "title": "Health documents",
        "code":  {"coding": [dict(COMPOSITION_DOC_TYPE)], "text": COMPOSITION_DOC_TYPE["display"]},
        "entry": [
            {"reference": local_reference(doc_id), "type": "DocumentReference"}
            for doc_id in document_reference_ids
        ],
    }]
    return resource


# ---------------------------------------------------------------------------
# Invoice record
# ---------------------------------------------------------------------------

def _line_item(index: int, description: str, amount: float) -> Dict[str, Any]:
    label = description or f"Item {index}"
    return {
        "sequence": index,
        "chargeItemCodeableConcept": {
            "coding": [{"system": f"{_NRCES_CS}/invoice-item", "code": f"item-{index}", "display": label}],
            "text": label,
        },
        "priceComponent": [{
            "type": "base",
            "code": {
                "coding": [{"system": f"{_NRCES_CS}/price-component", "code": "base-price", "display": "Base price"}],
                "text": "Base price",
            },
            "amount": _money(amount),
        }],
    }


def build_invoice(
    invoice_id: str,
    *,
    form: InvoiceForm,
    invoice_number: str,
    patient_id: str,
    patient_name: str,
    issuer_org_id: str,
    with_narrative: bool = True,
) -> _Resource:
    """
    Construct the FHIR Invoice.

    ``totalNet`` defaults to the sum of the line items and ``totalGross`` to
    ``totalNet`` when the clinician left them blank.  An unparseable invoice
    date falls back to today.
    """
    resource = _base("Invoice", invoice_id)
    if with_narrative:
        resource["text"] = build_narrative("Invoice", _para(f"Invoice {invoice_number} for {patient_name}"))
    resource.update({
        "identifier": [{"system": _INVOICE_ID_SYSTEM, "value": invoice_number}],
        "status":     "issued",
        "type": {
            "coding": [{"system": f"{_NRCES_CS}/invoice-type", "code": form.invoice_type, "display": "Invoice Type"}],
            "text": form.invoice_type,
        },
        "date":       to_canonical_date(form.invoice_date) or to_offset_timestamp()[:10],
        "subject":    _ref(patient_id, patient_name or None),
        "recipient":  _ref(patient_id),
        "issuer":     _ref(issuer_org_id),
        "lineItem":   [
            _line_item(i, item.description, item.amount)
            for i, item in enumerate(form.line_items, start=1)
        ],
        "totalNet":   _money(form.computed_net()),
        "totalGross": _money(form.computed_gross()),
    })
    return resource


def build_invoice_composition(
    composition_id: str,
    *,
    invoice_id: str,
    invoice_number: str,
    patient_id: str,
    patient_name: str,
    practitioner_id: str,
    practitioner_name: str,
    authored_on: str,
    with_narrative: bool = True,
) -> _Resource:
    """
    Construct the InvoiceRecord Composition.

    The invoice variant always carries one ``official`` attester pointing at
    the practitioner, and one section referencing the Invoice.
    """
    resource = _base("Composition", composition_id, PROFILES["InvoiceRecord"])
    if with_narrative:
        resource["text"] = build_narrative("Invoice Record", _para(f"Invoice for {patient_name}"))
    resource.update({
        "status":   "final",
        "type":     {"coding": [dict(INVOICE_RECORD_TYPE)], "text": INVOICE_RECORD_TYPE["display"]},
        "title":    f"Invoice {invoice_number}",
        "date":     authored_on,
        "subject":  _ref(patient_id, patient_name or None),
        "author":   [_ref(practitioner_id, practitioner_name)],
        "attester": [{"mode": "official", "party": _ref(practitioner_id), "time": authored_on}],
        "section": [{
            "title": "Invoice Section",
            "code": {
                "coding": [{"system": f"{_NRCES_CS}/section-type", "code": "invoice", "display": "Invoice"}],
                "text": "Invoice",
            },
            "entry": [{"reference": local_reference(invoice_id), "type": "Invoice"}],
        }],
    })
    return resource
