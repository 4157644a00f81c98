"""
build_bundle.py
---------------
HealthDoc Builder — ABDM Health Document Records — Command-line Bundle Builder
-------------------------------------------------------------------------------
Builds one document Bundle from the command line, using the same patient and
practitioner providers as the API server, and prints it as JSON.

Health document mode (default):
  • One DocumentReference + Binary per --file (placeholder PDF when none).
  • Optional encounter text, custodian and attester organisation.

Invoice mode (--invoice):
  • Line items given as "Description=Amount" pairs via --item.

Usage:
    python scripts/build_bundle.py --patient 0 --title "Discharge Summary" --file report.pdf
    python scripts/build_bundle.py --patient 0 --invoice --item "Consultation=500" --item "X-Ray=750.50"
    python scripts/build_bundle.py --patient 1 --submit
    python scripts/build_bundle.py --list-patients

Exit codes:
    0  bundle built (and submitted, when --submit was given)
    1  missing or invalid input, or an unreadable attachment
    2  submission failed

Project: HealthDoc Builder
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

# ── Path bootstrap (run from any directory) ───────────────────────────────────
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_REPO_ROOT = os.path.dirname(_SCRIPT_DIR)
sys.path.insert(0, _REPO_ROOT)

from pydantic import ValidationError  # noqa: E402

from attachments import AttachmentReadError, LocalFile  # noqa: E402
from config import get_settings  # noqa: E402
from document_builder import (  # noqa: E402
    MissingRequiredInputError,
    build_health_document_bundle,
    build_invoice_bundle,
)
from providers import patient_provider_from_settings, practitioner_provider_from_settings  # noqa: E402
from schemas import DocumentForm, InvoiceForm, LineItem  # noqa: E402
from submission_client import BundleSubmissionClient, SubmissionError  # noqa: E402

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stderr,
)
log = logging.getLogger("build_bundle")


def _parse_item(raw: str) -> LineItem:
    description, _sep, amount = raw.rpartition("=")
    if not _sep:
        return LineItem(description=raw, amount=0)
    return LineItem(description=description, amount=amount)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    patients = await patient_provider_from_settings(settings).load()

    if args.list_patients:
        for i, p in enumerate(patients):
            addresses = ", ".join(a.label for a in p.abha_addresses) or "-"
            print(f"{i:>3}  {p.name:<28} {p.gender:<8} {p.dob:<12} {addresses}")
        return 0

    patient = patients[args.patient] if 0 <= args.patient < len(patients) else None
    practitioner = practitioner_provider_from_settings(settings).resolve(args.practitioner)
    abha_address: Optional[str] = args.abha_address
    if abha_address is None and patient is not None:
        abha_address = patient.default_abha_address() or None

    try:
        if args.invoice:
            form = InvoiceForm(
                invoice_number=args.invoice_number,
                invoice_date=args.invoice_date,
                invoice_type=args.invoice_type,
                line_items=[_parse_item(i) for i in args.item],
            )
            bundle = build_invoice_bundle(
                patient, practitioner, form,
                abha_address=abha_address,
                with_narrative=settings.narrative_enabled,
            )
        else:
            form = DocumentForm(
                status=args.status,
                title=args.title,
                authored_at=args.authored_at,
                encounter_text=args.encounter,
                custodian_name=args.custodian,
                attester_mode=args.attester_mode,
                attester_party_type=args.attester_party,
                attester_org_name=args.attester_org,
            )
            bundle = await build_health_document_bundle(
                patient, practitioner, form,
                [LocalFile(path) for path in args.file],
                abha_address=abha_address,
                with_narrative=settings.narrative_enabled,
            )
    except ValidationError as exc:
        log.error("Invalid input: %s", exc.errors()[0]["msg"])
        return 1
    except (MissingRequiredInputError, AttachmentReadError) as exc:
        log.error("%s", exc)
        return 1

    output = json.dumps(bundle, indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as fh:
            fh.write(output)
        log.info("Bundle %s written to %s", bundle["id"], args.output)
    else:
        print(output)

    if not args.submit:
        return 0

    try:
        async with BundleSubmissionClient() as client:
            response = await client.submit(bundle, patient.submission_reference)
    except SubmissionError as exc:
        log.error("Submission failed (HTTP %s): %s", exc.status_code, exc.detail)
        return 2
    log.info("Submission accepted: %s", json.dumps(response)[:300])
    return 0


# ── CLI ───────────────────────────────────────────────────────────────────────

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build an ABDM health document or invoice Bundle and print it as JSON.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/build_bundle.py --list-patients
  python scripts/build_bundle.py --patient 0 --file report.pdf
  python scripts/build_bundle.py --patient 0 --invoice --item "Consultation=500"
        """,
    )
    parser.add_argument("--list-patients", action="store_true", help="Print the patient list and exit.")
    parser.add_argument("--patient", type=int, default=-1, metavar="INDEX", help="Patient index (see --list-patients).")
    parser.add_argument("--practitioner", default=None, metavar="ID", help="Roster practitioner id.")
    parser.add_argument("--abha-address", default=None, help="ABHA address (default: patient's primary).")
    parser.add_argument("--output", "-o", default="", metavar="PATH", help="Write the bundle to PATH instead of stdout.")
    parser.add_argument("--submit", action="store_true", help="Submit the bundle after building it.")

    doc = parser.add_argument_group("health document")
    doc.add_argument("--title", default="Prescription Record")
    doc.add_argument("--status", default="final")
    doc.add_argument("--authored-at", default=None, metavar="YYYY-MM-DDTHH:MM")
    doc.add_argument("--encounter", default="", metavar="TEXT")
    doc.add_argument("--custodian", default="", metavar="NAME")
    doc.add_argument("--attester-mode", default="professional")
    doc.add_argument("--attester-party", default="Practitioner", choices=["Practitioner", "Organization"])
    doc.add_argument("--attester-org", default="", metavar="NAME")
    doc.add_argument("--file", action="append", default=[], metavar="PATH", help="Attachment; repeatable.")

    inv = parser.add_argument_group("invoice")
    inv.add_argument("--invoice", action="store_true", help="Build an InvoiceRecord bundle.")
    inv.add_argument("--invoice-number", default="")
    inv.add_argument("--invoice-date", default="", metavar="DD-MM-YYYY")
    inv.add_argument("--invoice-type", default="healthcare", choices=["healthcare", "pharmacy", "other"])
    inv.add_argument("--item", action="append", default=[], metavar="DESC=AMOUNT", help="Line item; repeatable.")
    return parser.parse_args(argv)


if __name__ == "__main__":
    sys.exit(asyncio.run(run(_parse_args())))
