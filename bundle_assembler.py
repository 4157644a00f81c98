"""
bundle_assembler.py
-------------------
HealthDoc Builder — ABDM Health Document Records — Document Bundle Assembler
-----------------------------------------------------------------------------
Collects the resources built by ``fhir_mapper`` into one FHIR R4 ``document``
Bundle and enforces the graph invariants before the Bundle leaves the
process:

  1. The document root (Composition) is ``entry[0]``.
  2. No resource id / ``fullUrl`` appears twice.
  3. Every ``reference`` and every ``urn:uuid:`` attachment ``url`` anywhere
     in the graph resolves to exactly one entry's ``fullUrl``.

Entry order is fixed: document root, the supporting records in the order
given (``None`` skipped), then all DocumentReferences, then all Binaries.

Public API:
    assemble_bundle()      — build + validate a document Bundle.
    validate_bundle()      — raise ``BundleIntegrityError`` on any violation.
    collect_references()   — every local reference string in a resource.

Project: HealthDoc Builder
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from fhir_helpers import is_local_reference, local_reference, new_id, to_offset_timestamp
from fhir_mapper import PROFILES

logger = logging.getLogger(__name__)

_Resource = Dict[str, Any]

BUNDLE_IDENTIFIER_SYSTEM = "urn:ietf:rfc:3986"
DOCUMENT_ROOT_TYPE = "Composition"


class BundleIntegrityError(Exception):
    """Raised when an assembled Bundle violates a reference invariant."""

    def __init__(self, problems: List[str]) -> None:
        self.problems = problems
        super().__init__("Bundle integrity check failed: " + "; ".join(problems))


def collect_references(node: Any) -> Iterator[str]:
    """
    Yield every local reference embedded in *node*.

    Covers ``{"reference": ...}`` values at any depth and attachment ``url``
    values that use the ``urn:uuid:`` scheme.
    """
    if isinstance(node, dict):
        for key, value in node.items():
            if key == "reference" and isinstance(value, str):
                yield value
            elif key == "url" and is_local_reference(value):
                yield value
            else:
                yield from collect_references(value)
    elif isinstance(node, list):
        for item in node:
            yield from collect_references(item)


def validate_bundle(bundle: Dict[str, Any]) -> None:
    """
    Check the document Bundle invariants.

    Raises:
        BundleIntegrityError: listing every problem found.
    """
    entries: List[Dict[str, Any]] = bundle.get("entry", [])
    problems: List[str] = []

    if not entries:
        raise BundleIntegrityError(["bundle has no entries"])

    root_type = entries[0].get("resource", {}).get("resourceType")
    if root_type != DOCUMENT_ROOT_TYPE:
        problems.append(f"entry[0] is {root_type!r}, expected {DOCUMENT_ROOT_TYPE!r}")

    full_urls = Counter(e.get("fullUrl") for e in entries)
    for url, count in full_urls.items():
        if count > 1:
            problems.append(f"fullUrl {url} appears {count} times")

    for i, entry in enumerate(entries):
        resource = entry.get("resource", {})
        expected = local_reference(resource.get("id", ""))
        if entry.get("fullUrl") != expected:
            problems.append(f"entry[{i}] fullUrl {entry.get('fullUrl')!r} does not match id {resource.get('id')!r}")
        for ref in collect_references(resource):
            if full_urls.get(ref, 0) != 1:
                problems.append(
                    f"entry[{i}] {resource.get('resourceType')} reference {ref} does not resolve"
                )

    if problems:
        logger.error("bundle_assembler: %d integrity problem(s): %s", len(problems), problems)
        raise BundleIntegrityError(problems)


def assemble_bundle(
    document_root: _Resource,
    ordered_records: Sequence[Optional[_Resource]],
    attachment_pairs: Sequence[Tuple[_Resource, _Resource]] = (),
    *,
    id_prefix: str = "HealthDocumentBundle",
) -> Dict[str, Any]:
    """
    Assemble and validate a FHIR R4 document Bundle.

    Args:
        document_root:    The Composition; always ``entry[0]``.
        ordered_records:  Supporting resources in entry order; ``None``
                          placeholders for absent optional records are skipped.
        attachment_pairs: ``(Binary, DocumentReference)`` tuples as returned by
                          ``fhir_mapper.build_attachment_pair``.  All
                          DocumentReferences are emitted before all Binaries.
        id_prefix:        Prefix of ``Bundle.id``.

    Returns:
        dict: The Bundle, ready for ``json.dumps``.

    Raises:
        BundleIntegrityError: if any invariant does not hold.
    """
    resources: List[_Resource] = [document_root]
    resources.extend(r for r in ordered_records if r is not None)
    resources.extend(docref for _binary, docref in attachment_pairs)
    resources.extend(binary for binary, _docref in attachment_pairs)

    now = to_offset_timestamp()
    bundle: Dict[str, Any] = {
        "resourceType": "Bundle",
        "id":           f"{id_prefix}-{new_id()}",
        "meta":         {"profile": [PROFILES["Bundle"]], "lastUpdated": now},
        "identifier":   {"system": BUNDLE_IDENTIFIER_SYSTEM, "value": local_reference(new_id())},
        "type":         "document",
        "timestamp":    now,
        "entry": [
            {"fullUrl": local_reference(r["id"]), "resource": r}
            for r in resources
        ],
    }

    validate_bundle(bundle)
    logger.info(
        "bundle_assembler: built document bundle %s — %d entries (%s).",
        bundle["id"],
        len(resources),
        ", ".join(r["resourceType"] for r in resources),
    )
    return bundle
