"""
schemas.py
----------
HealthDoc Builder — ABDM Health Document Records — Pydantic Data Contracts
---------------------------------------------------------------------------
Pydantic v2 models that act as the data contract between the loosely-typed
collaborators (patient list, practitioner roster / injected object, form
fields) and the FHIR record builders in ``fhir_mapper``.

Normalisation policy
--------------------
Every loose input is normalised exactly once, here, at the boundary:

  1. Patients — ``PatientRecord.from_source()`` accepts the heterogeneous
     patient dicts served by the patient API / ``patients.json`` (``name`` as a
     string or a FHIR HumanName list, ``dob`` in several formats, ABHA
     addresses nested under ``additional_attributes`` or top-level).  Missing
     optional fields never fail; the record simply omits them.

  2. ABHA addresses — ``normalize_abha_addresses()`` turns plain strings and
     ``{"address": ..., "isPrimary": ...}`` objects into ``AbhaAddress``
     values, primary first, then by value.

  3. Practitioners — ``PractitionerRecord.from_roster()`` and
     ``PractitionerRecord.from_injected()`` map the two practitioner shapes
     onto one canonical record.

  4. Forms — ``DocumentForm`` / ``InvoiceForm`` strip whitespace and coerce
     values; required-field checks happen in ``document_builder`` so the
     failure is reported as a single "missing required input" outcome.

Public API
----------
    AbhaAddress, PatientRecord, PractitionerRecord
    DocumentForm, InvoiceForm, LineItem
    normalize_abha_addresses()
    build_telecom(), build_address()

Project: HealthDoc Builder
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fhir_helpers import to_canonical_date

logger = logging.getLogger(__name__)

ATTESTER_MODES = ("personal", "professional", "legal", "official")
ATTESTER_PARTY_TYPES = ("Practitioner", "Organization")
INVOICE_TYPES = ("healthcare", "pharmacy", "other")

_DEFAULT_PRACTITIONER_NAME = "Dr. ABC"
_DEFAULT_PRACTITIONER_LICENSE = "LIC-0000"


def _clean(value: Any) -> str:
    """Coerce *value* to a stripped string; ``None`` becomes ``""``."""
    if value is None:
        return ""
    return str(value).strip()


# ---------------------------------------------------------------------------
# ABHA addresses
# ---------------------------------------------------------------------------

class AbhaAddress(BaseModel):
    """One selectable health-exchange address for a patient."""

    model_config = ConfigDict(frozen=True)

    value:   str
    label:   str
    primary: bool = False


def _raw_abha_list(source: Any) -> List[Any]:
    if isinstance(source, list):
        return source
    if not isinstance(source, dict):
        return []
    nested = (source.get("additional_attributes") or {})
    if isinstance(nested, dict) and isinstance(nested.get("abha_addresses"), list):
        return nested["abha_addresses"]
    if isinstance(source.get("abha_addresses"), list):
        return source["abha_addresses"]
    return []


def _abha_from_item(item: Any) -> Optional[AbhaAddress]:
    if isinstance(item, str):
        value = item.strip()
        return AbhaAddress(value=value, label=value) if value else None

    if isinstance(item, dict):
        primary = bool(item.get("isPrimary"))
        address = _clean(item.get("address"))
        if address:
            label = f"{address} (primary)" if primary else address
            return AbhaAddress(value=address, label=label, primary=primary)
        if not item:
            return None
        # Unrecognised object shape: keep it visible as a literal label.
        literal = json.dumps(item, sort_keys=True, default=str)
        logger.debug("schemas: unrecognised ABHA entry kept as literal %s", literal)
        return AbhaAddress(value=literal, label=literal, primary=primary)

    return None


def normalize_abha_addresses(source: Any) -> List[AbhaAddress]:
    """
    Extract, deduplicate and order a patient's ABHA addresses.

    *source* is either a patient dict (addresses read from
    ``additional_attributes.abha_addresses``, falling back to top-level
    ``abha_addresses``) or the bare list itself.

    Ordering is primary-first, then lexicographic by value, so the first
    element is a reproducible default selection.

    Example::

        normalize_abha_addresses(["a@x", {"address": "b@x", "isPrimary": True}])
        # → [AbhaAddress(value="b@x", primary=True), AbhaAddress(value="a@x", primary=False)]
    """
    merged: Dict[str, AbhaAddress] = {}
    for item in _raw_abha_list(source):
        entry = _abha_from_item(item)
        if entry is None:
            continue
        existing = merged.get(entry.value)
        if existing is None or (entry.primary and not existing.primary):
            merged[entry.value] = entry

    return sorted(merged.values(), key=lambda a: (not a.primary, a.value))


# ---------------------------------------------------------------------------
# Contacts / address
# ---------------------------------------------------------------------------

def build_telecom(
    patient: "PatientRecord",
    abha_address: Optional[str] = None,
) -> List[Dict[str, str]]:
    """
    Return the FHIR ``telecom`` list for *patient*.

    Order is fixed: phone, email, then an ``abha://`` contact line for the
    chosen ABHA address.
    """
    telecom: List[Dict[str, str]] = []
    if patient.mobile:
        telecom.append({"system": "phone", "value": patient.mobile, "use": "mobile"})
    if patient.email:
        telecom.append({"system": "email", "value": patient.email})
    if abha_address:
        telecom.append({"system": "url", "value": f"abha://{abha_address}"})
    return telecom


def build_address(patient: "PatientRecord") -> Optional[List[Dict[str, str]]]:
    """Return a single-text FHIR ``address`` list, or ``None`` when unknown."""
    if not patient.address:
        return None
    return [{"text": patient.address}]


def _address_text(value: Any) -> str:
    if isinstance(value, dict):
        parts = []
        for key in ("line", "line1", "line2", "city", "district", "state", "postalCode", "pincode", "country"):
            part = value.get(key)
            if isinstance(part, list):
                parts.extend(_clean(p) for p in part)
            else:
                parts.append(_clean(part))
        text = ", ".join(p for p in parts if p)
        return text or _clean(value.get("text"))
    return _clean(value)


def _name_text(value: Any) -> str:
    """Accept a plain string or a FHIR HumanName list / dict."""
    if isinstance(value, list):
        for entry in value:
            text = _name_text(entry)
            if text:
                return text
        return ""
    if isinstance(value, dict):
        text = _clean(value.get("text"))
        if text:
            return text
        given = value.get("given") or []
        if isinstance(given, str):
            given = [given]
        pieces = [_clean(g) for g in given] + [_clean(value.get("family"))]
        return " ".join(p for p in pieces if p)
    return _clean(value)


# ---------------------------------------------------------------------------
# PatientRecord
# ---------------------------------------------------------------------------

class PatientRecord(BaseModel):
    """
    Canonical patient shape consumed by ``fhir_mapper.build_patient``.

    Fields
    ------
    source_id:     ``id`` from the patient source (any type, stringified).
    name:          Display name text.
    gender:        Lower-cased gender, or ``""``.
    dob:           Date of birth exactly as supplied.
    birth_date:    ``dob`` canonicalised to ``YYYY-MM-DD``; ``None`` when the
                   supplied value could not be parsed.
    mobile/email:  Contact points.
    address:       One-line address text.
    mrn, user_ref_id, abha_ref, user_id:
                   Identifier candidates from the source record.
    abha_addresses: Normalised selectable ABHA addresses.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    source_id:      str = ""
    name:           str = ""
    gender:         str = ""
    dob:            str = ""
    birth_date:     Optional[str] = None
    mobile:         str = ""
    email:          str = ""
    address:        str = ""
    mrn:            str = ""
    user_ref_id:    str = ""
    abha_ref:       str = ""
    user_id:        str = ""
    abha_addresses: List[AbhaAddress] = Field(default_factory=list)

    @classmethod
    def from_source(cls, raw: Dict[str, Any]) -> "PatientRecord":
        """Normalise one loosely-typed patient dict.  Never raises on missing fields."""
        raw = raw if isinstance(raw, dict) else {}
        dob = _clean(raw.get("dob") or raw.get("birthDate") or raw.get("birth_date"))
        return cls(
            source_id=_clean(raw.get("id")),
            name=_name_text(raw.get("name")),
            gender=_clean(raw.get("gender")).lower(),
            dob=dob,
            birth_date=to_canonical_date(dob),
            mobile=_clean(raw.get("mobile") or raw.get("phone")),
            email=_clean(raw.get("email")),
            address=_address_text(raw.get("address")),
            mrn=_clean(raw.get("mrn")),
            user_ref_id=_clean(raw.get("user_ref_id")),
            abha_ref=_clean(raw.get("abha_ref")),
            user_id=_clean(raw.get("user_id")),
            abha_addresses=normalize_abha_addresses(raw),
        )

    @property
    def local_identifier(self) -> str:
        """Medical-record identifier: mrn → user_ref_id → abha_ref → id."""
        return self.mrn or self.user_ref_id or self.abha_ref or self.source_id

    @property
    def submission_reference(self) -> Optional[int]:
        """Numeric patient reference sent alongside a submitted bundle."""
        try:
            return int(self.user_id)
        except ValueError:
            return None

    def default_abha_address(self) -> str:
        return self.abha_addresses[0].value if self.abha_addresses else ""


# ---------------------------------------------------------------------------
# PractitionerRecord
# ---------------------------------------------------------------------------

class PractitionerRecord(BaseModel):
    """Canonical practitioner shape consumed by ``fhir_mapper.build_practitioner``."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id:                  str = ""
    name:                str
    license:             str
    qualification:       str = ""
    phone:               str = ""
    email:               str = ""
    registration_system: str = ""

    @classmethod
    def from_roster(cls, entry: Dict[str, Any]) -> "PractitionerRecord":
        registration = entry.get("registration") or {}
        return cls(
            id=_clean(entry.get("id")),
            name=_name_text(entry.get("name")) or _DEFAULT_PRACTITIONER_NAME,
            license=_clean(registration.get("value") or entry.get("license")) or _DEFAULT_PRACTITIONER_LICENSE,
            qualification=_clean(entry.get("qualification")),
            phone=_clean(entry.get("phone")),
            email=_clean(entry.get("email")),
            registration_system=_clean(registration.get("system")),
        )

    @classmethod
    def from_injected(cls, obj: Any) -> "PractitionerRecord":
        """
        Map an externally injected practitioner object.

        ``name`` may be a string or a list of ``{"text": ...}`` entries; the
        licence comes from ``identifier[0].value`` then ``license``.  An
        absent or malformed object yields the fixed default practitioner.
        """
        if not isinstance(obj, dict):
            if obj is not None:
                logger.warning("schemas: injected practitioner is not an object — using default.")
            return cls.default()

        identifiers = obj.get("identifier")
        license_value = ""
        if isinstance(identifiers, list) and identifiers and isinstance(identifiers[0], dict):
            license_value = _clean(identifiers[0].get("value"))

        return cls(
            id=_clean(obj.get("id")),
            name=_name_text(obj.get("name")) or _DEFAULT_PRACTITIONER_NAME,
            license=license_value or _clean(obj.get("license")) or _DEFAULT_PRACTITIONER_LICENSE,
            qualification=_clean(obj.get("qualification")),
            phone=_clean(obj.get("phone")),
            email=_clean(obj.get("email")),
        )

    @classmethod
    def default(cls) -> "PractitionerRecord":
        return cls(name=_DEFAULT_PRACTITIONER_NAME, license=_DEFAULT_PRACTITIONER_LICENSE)


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------

class DocumentForm(BaseModel):
    """Composition-level fields entered for a health document record."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    status:              str = "final"
    title:               str = "Prescription Record"
    authored_at:         Optional[str] = None     # datetime-local value; blank → now
    encounter_text:      str = ""
    custodian_name:      str = ""
    attester_mode:       str = "professional"
    attester_party_type: str = "Practitioner"
    attester_org_name:   str = ""

    @field_validator(
        "status", "title", "encounter_text", "custodian_name",
        "attester_mode", "attester_party_type", "attester_org_name",
        mode="before",
    )
    @classmethod
    def none_to_blank(cls, v: Any) -> str:
        return _clean(v)

    @field_validator("attester_mode", mode="after")
    @classmethod
    def check_attester_mode(cls, v: str) -> str:
        if v and v not in ATTESTER_MODES:
            raise ValueError(f"attester_mode must be one of {', '.join(ATTESTER_MODES)}.")
        return v or "professional"

    @field_validator("attester_party_type", mode="after")
    @classmethod
    def check_party_type(cls, v: str) -> str:
        if v and v not in ATTESTER_PARTY_TYPES:
            raise ValueError(f"attester_party_type must be one of {', '.join(ATTESTER_PARTY_TYPES)}.")
        return v or "Practitioner"


class LineItem(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    description: str = ""
    amount:      float = 0.0

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float:
        """Blank / non-numeric amounts count as zero, as in the form UI."""
        try:
            return float(v) if v not in (None, "") else 0.0
        except (TypeError, ValueError):
            return 0.0


class InvoiceForm(BaseModel):
    """Invoice-level fields entered for an invoice record."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    invoice_number: str = ""
    invoice_date:   str = ""
    invoice_type:   str = "healthcare"
    line_items:     List[LineItem] = Field(default_factory=list)
    total_net:      Optional[float] = None
    total_gross:    Optional[float] = None

    @field_validator("invoice_type", mode="after")
    @classmethod
    def check_invoice_type(cls, v: str) -> str:
        if v not in INVOICE_TYPES:
            raise ValueError(f"invoice_type must be one of {', '.join(INVOICE_TYPES)}.")
        return v

    @field_validator("total_net", "total_gross", mode="before")
    @classmethod
    def blank_total_is_none(cls, v: Any) -> Optional[float]:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v

    def computed_net(self) -> float:
        """``total_net`` when entered, else the sum of line-item amounts."""
        if self.total_net is not None:
            return round(self.total_net, 2)
        return round(sum(item.amount for item in self.line_items), 2)

    def computed_gross(self) -> float:
        if self.total_gross is not None:
            return round(self.total_gross, 2)
        return self.computed_net()
