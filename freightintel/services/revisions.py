"""Revision tracker — dedupe repeated documents, number the rest.

One DocumentRevision per distinct (shipment, document type, fingerprint).
The fingerprint covers the normalized extracted field set, so the same PDF
received twice collapses into one revision while a one-field amendment gets
the next number. Labels like "2ND UPDATE" or "AMENDMENT 3" are parsed from the
subject for display; they never drive numbering.
"""

import re

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..models import Document, DocumentRevision, ExtractedField, Shipment
from ..utils.normalization import fields_fingerprint

_ORDINAL_WORDS = {
    "FIRST": "1ST", "SECOND": "2ND", "THIRD": "3RD", "FOURTH": "4TH", "FIFTH": "5TH",
    "SIXTH": "6TH", "SEVENTH": "7TH", "EIGHTH": "8TH", "NINTH": "9TH", "TENTH": "10TH",
}

_LABEL_PATTERNS = [
    (re.compile(r"\b(\d{1,2}(?:ST|ND|RD|TH))\s+(UPDATE|REVISION|AMENDMENT)\b", re.I),
     lambda m: f"{m.group(1).upper()} {m.group(2).upper()}"),
    (re.compile(r"\b(" + "|".join(_ORDINAL_WORDS) + r")\s+(UPDATE|REVISION|AMENDMENT)\b", re.I),
     lambda m: f"{_ORDINAL_WORDS[m.group(1).upper()]} {m.group(2).upper()}"),
    (re.compile(r"\b(AMENDMENT|REVISION|REV)\s*(?:NO\.?\s*|#\s*)?(\d{1,2})\b", re.I),
     lambda m: f"{'REVISION' if m.group(1).upper() == 'REV' else m.group(1).upper()} {m.group(2)}"),
    (re.compile(r"\bV(\d{1,2})\b", re.I), lambda m: f"V{m.group(1)}"),
    (re.compile(r"\b(AMENDED|REVISED|UPDATED|CORRECTED)\b", re.I), lambda m: m.group(1).upper()),
]


def detect_revision_label(subject: str | None) -> str | None:
    """'RE: BC 2nd UPDATE - 262175704' → '2ND UPDATE'."""
    if not subject:
        return None
    for pattern, render in _LABEL_PATTERNS:
        m = pattern.search(subject)
        if m:
            return render(m)
    return None


def document_fingerprint(rows: list[ExtractedField]) -> str:
    """Fingerprint of a document's usable observations."""
    fields: dict[str, list[str]] = {}
    for row in rows:
        if row.resolution in ("rejected", "superseded"):
            continue
        fields.setdefault(row.field_name, []).append(row.value)
    return fields_fingerprint(fields)


def find_duplicate(db: Session, shipment_id: int, document_type: str, fingerprint: str) -> DocumentRevision | None:
    return db.scalar(
        select(DocumentRevision).where(
            DocumentRevision.shipment_id == shipment_id,
            DocumentRevision.document_type == document_type,
            DocumentRevision.content_fingerprint == fingerprint,
        )
    )


def register_revision(
    db: Session,
    shipment: Shipment,
    document: Document,
    fingerprint: str,
    changed_fields: list[str],
) -> DocumentRevision:
    """Create the next revision for (shipment, document type) and mark it latest.

    Idempotent: an existing revision with the same fingerprint is returned as-is.
    """
    existing = find_duplicate(db, shipment.id, document.document_type, fingerprint)
    if existing is not None:
        return existing

    current_max = db.scalar(
        select(func.max(DocumentRevision.revision_number)).where(
            DocumentRevision.shipment_id == shipment.id,
            DocumentRevision.document_type == document.document_type,
        )
    ) or 0
    db.execute(
        update(DocumentRevision)
        .where(
            DocumentRevision.shipment_id == shipment.id,
            DocumentRevision.document_type == document.document_type,
            DocumentRevision.is_latest.is_(True),
        )
        .values(is_latest=False)
        .execution_options(synchronize_session="fetch")
    )
    revision = DocumentRevision(
        shipment_id=shipment.id,
        document_type=document.document_type,
        revision_number=current_max + 1,
        revision_label=detect_revision_label(document.subject),
        content_fingerprint=fingerprint,
        changed_fields=list(changed_fields),
        source_document_id=document.id,
        is_latest=True,
        received_at=document.received_at,
    )
    db.add(revision)
    db.flush()

    if revision.revision_number == 1:
        logger.info(
            "Shipment {}: first {} (document {})",
            shipment.booking_number, document.document_type, document.id,
        )
    else:
        logger.info(
            "Shipment {}: {} revision {}{} changed {}",
            shipment.booking_number,
            document.document_type,
            revision.revision_number,
            f" ({revision.revision_label})" if revision.revision_label else "",
            ", ".join(changed_fields) or "nothing",
        )
    return revision
