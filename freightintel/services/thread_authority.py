"""Thread authority — one canonical identifier per conversation.

Selection: originals before replies, then oldest first; the first email with
any identifier wins, and within it the identifier with the highest priority
(booking > BL > container > reference), then confidence.

No identifier anywhere in the thread → no authority. The thread stays
unresolved rather than borrowing an identifier from somewhere else.

The repair pass re-points every reply whose link disagrees with the
authority: delete the stale link, insert the corrected one, write a
LinkCorrection, warn, and rebuild both shipments.
"""

from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Document, ExtractedField, LinkCorrection, Shipment, ThreadAuthority
from ..utils.locks import shipment_lock
from .reconciliation import rebuild_shipment
from .shipment_linker import current_link, find_by_identifier, link_document

IDENTIFIER_PRIORITY = {
    "booking_number": 4,
    "bl_number": 3,
    "container_number": 2,
    "reference_number": 1,
}


def _ts(dt: datetime | None) -> float:
    if dt is None:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def thread_documents(db: Session, thread_id: str) -> list[Document]:
    return db.scalars(select(Document).where(Document.thread_id == thread_id)).all()


def choose_authority(
    documents: list[Document], rows_by_document: dict[int, list[ExtractedField]]
) -> tuple[Document, ExtractedField] | None:
    """Pure selection over a thread's documents and their observations."""
    ordered = sorted(documents, key=lambda d: (bool(d.is_reply), _ts(d.received_at), d.id))
    for doc in ordered:
        candidates = [
            r for r in rows_by_document.get(doc.id, [])
            if r.field_name in IDENTIFIER_PRIORITY and r.resolution not in ("rejected", "superseded")
        ]
        if candidates:
            best = max(
                candidates,
                key=lambda r: (IDENTIFIER_PRIORITY[r.field_name], r.confidence or 0, r.value),
            )
            return doc, best
    return None


def compute_thread_authority(db: Session, thread_id: str) -> ThreadAuthority | None:
    """Select and persist (upsert) the thread's authority. None when unresolved."""
    docs = thread_documents(db, thread_id)
    rows_by_document: dict[int, list[ExtractedField]] = {}
    if docs:
        for row in db.scalars(
            select(ExtractedField).where(ExtractedField.document_id.in_([d.id for d in docs]))
        ):
            rows_by_document.setdefault(row.document_id, []).append(row)

    existing = db.scalar(select(ThreadAuthority).where(ThreadAuthority.thread_id == thread_id))
    choice = choose_authority(docs, rows_by_document)
    if choice is None:
        if existing is not None:
            db.delete(existing)
            db.flush()
        logger.debug("Thread {} has no identifier yet", thread_id)
        return None

    doc, row = choice
    if existing is None:
        existing = ThreadAuthority(thread_id=thread_id)
        db.add(existing)
    existing.authority_document_id = doc.id
    existing.identifier_type = row.field_name
    existing.identifier_value = row.value
    existing.confidence = row.confidence or 0
    db.flush()
    return existing


def repair_cross_links(db: Session, thread_id: str) -> list[LinkCorrection]:
    """Re-anchor replies to the shipment implied by the thread authority."""
    authority = db.scalar(select(ThreadAuthority).where(ThreadAuthority.thread_id == thread_id))
    if authority is None:
        return []
    target = find_by_identifier(db, authority.identifier_type, authority.identifier_value)
    if target is None:
        logger.debug(
            "Thread {}: no shipment for {} {}",
            thread_id, authority.identifier_type, authority.identifier_value,
        )
        return []

    corrections: list[LinkCorrection] = []
    affected: set[int] = set()
    replies = [
        d for d in thread_documents(db, thread_id)
        if d.is_reply and d.id != authority.authority_document_id
    ]
    for doc in sorted(replies, key=lambda d: d.id):
        link = current_link(db, doc.id)
        if link is None:
            link_document(db, doc, target, "thread_authority")
            affected.add(target.id)
            continue
        if link.shipment_id == target.id:
            continue

        old_shipment_id = link.shipment_id
        db.delete(link)
        db.flush()
        link_document(db, doc, target, "repair")
        correction = LinkCorrection(
            document_id=doc.id,
            thread_id=thread_id,
            old_shipment_id=old_shipment_id,
            new_shipment_id=target.id,
            identifier_type=authority.identifier_type,
            identifier_value=authority.identifier_value,
        )
        db.add(correction)
        corrections.append(correction)
        affected.update({old_shipment_id, target.id})
        logger.warning(
            "Thread {}: re-linked reply {} from shipment {} to {} ({} {})",
            thread_id, doc.id, old_shipment_id, target.booking_number,
            authority.identifier_type, authority.identifier_value,
        )
    db.flush()

    for shipment_id in sorted(affected):
        shipment = db.get(Shipment, shipment_id)
        if shipment is None:
            continue
        with shipment_lock(db, shipment_id):
            rebuild_shipment(db, shipment, reason="repair")
    return corrections


def refresh_thread(db: Session, thread_id: str) -> list[LinkCorrection]:
    """Recompute the authority, then repair the thread's links."""
    if compute_thread_authority(db, thread_id) is None:
        return []
    return repair_cross_links(db, thread_id)


def resolve_all(db: Session, *, repair: bool = True, commit: bool = True) -> dict:
    """Rebuild every thread authority from persisted rows, optionally repairing links."""
    thread_ids = db.scalars(
        select(Document.thread_id).where(Document.thread_id.is_not(None)).distinct()
    ).all()
    resolved = corrected = 0
    for thread_id in sorted(thread_ids):
        if compute_thread_authority(db, thread_id) is None:
            continue
        resolved += 1
        if repair:
            corrected += len(repair_cross_links(db, thread_id))
    if commit:
        db.commit()
    logger.info(
        "Thread authority: {} threads, {} resolved, {} links corrected",
        len(thread_ids), resolved, corrected,
    )
    return {"threads": len(thread_ids), "resolved": resolved, "corrected": corrected}
