"""Processing pipeline — classify, extract, escalate, then reconcile.

Two halves per message:
  analyze_message()  async, oracle side only, no database access
  apply_analysis()   sync, database side, under the per-shipment lock

process_message() runs both; process_batch() fans the oracle half out over a
bounded pool and applies results in arrival order, collecting failures
instead of aborting. rebuild_shipment() replays a shipment from history.

Reprocessing an already-stored message is a no-op unless reprocess=True,
in which case the new classification and observations are recorded and the
shipment is rebuilt from its full history.
"""

import asyncio
from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import ExtractionError
from ..models import Document, ExtractedField, Shipment
from ..schemas.messages import InboundMessage
from ..utils.locks import shipment_lock
from ..utils.normalization import content_fingerprint
from . import workflow
from .authority import ACCEPTED, DUPLICATE, REJECTED, SUPERSEDED, apply_fields, authority_level
from .classifier import (
    ClassificationResult,
    classify_message,
    direction_for,
    is_reply_subject,
    save_classification,
    sender_category,
)
from .confidence import (
    ACCEPT,
    ESCALATION_LABELS,
    ESCALATION_TIERS,
    FLAG_REVIEW,
    is_communication_type,
    recommend_action,
)
from .extraction import FieldObservation, extract_fields, observations_as_fields
from .reconciliation import rebuild_shipment
from .revisions import document_fingerprint, find_duplicate, register_revision
from .shipment_linker import current_link, link_document, resolve_or_create
from .thread_authority import refresh_thread

__all__ = [
    "BatchResult",
    "MessageAnalysis",
    "ProcessResult",
    "analyze_message",
    "apply_analysis",
    "process_batch",
    "process_message",
    "rebuild_shipment",
]


@dataclass
class MessageAnalysis:
    message: InboundMessage
    classification: ClassificationResult
    sender_category: str
    direction: str
    is_reply: bool
    observations: list[FieldObservation] = field(default_factory=list)
    extraction_tier: str | None = None
    extraction_error: str | None = None
    action: str = ACCEPT
    escalated_to: str | None = None
    needs_review: bool = False
    review_reason: str | None = None


@dataclass
class ProcessResult:
    message_id: str
    status: str  # processed | duplicate_message | duplicate_revision | unlinked | reprocessed
    document_id: int | None = None
    shipment_id: int | None = None
    document_type: str | None = None
    action: str | None = None
    revision_number: int | None = None
    changed_fields: list[str] = field(default_factory=list)


@dataclass
class BatchResult:
    processed: int = 0
    results: list[ProcessResult] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


# ── Oracle side ───────────────────────────────────────────────────────


async def analyze_message(message: InboundMessage) -> MessageAnalysis:
    """Classify, extract at the fast tier, and re-extract if the engine escalates."""
    category = sender_category(message.sender)
    classification = await classify_message(message)
    analysis = MessageAnalysis(
        message=message,
        classification=classification,
        sender_category=category,
        direction=direction_for(category),
        is_reply=is_reply_subject(message.subject),
    )
    doc_type = classification.document_type

    fields = None
    try:
        analysis.observations, _ = await extract_fields(message, doc_type, tier="fast")
        analysis.extraction_tier = "fast"
        fields = observations_as_fields(analysis.observations)
    except ExtractionError as e:
        logger.warning("Extraction failed for {} ({} tier): {}", message.message_id, e.tier, e)
        analysis.extraction_error = str(e)[:500]

    action = recommend_action(doc_type, classification.confidence, fields)
    analysis.action = action

    if action in ESCALATION_TIERS:
        tier = ESCALATION_TIERS[action]
        analysis.escalated_to = ESCALATION_LABELS[action]
        logger.info(
            "Escalating {} ({} at {:.0f}%) to {}",
            message.message_id, doc_type, classification.confidence, analysis.escalated_to,
        )
        try:
            observations, overall = await extract_fields(message, doc_type, tier=tier)
        except ExtractionError as e:
            logger.warning("Escalated extraction failed for {}: {}", message.message_id, e)
            analysis.needs_review = True
            analysis.review_reason = f"escalation to {analysis.escalated_to} failed"
        else:
            analysis.observations = observations
            analysis.extraction_tier = tier
            analysis.extraction_error = None
            after = recommend_action(doc_type, overall, observations_as_fields(observations))
            if after != ACCEPT:
                analysis.needs_review = True
                analysis.review_reason = (
                    f"{doc_type} still at {overall:.0f}% after escalation to {analysis.escalated_to}"
                )
    elif action == FLAG_REVIEW:
        analysis.needs_review = True
        analysis.review_reason = (
            f"{doc_type} classified at {classification.confidence:.0f}% ({classification.method})"
        )
    return analysis


# ── Database side ─────────────────────────────────────────────────────


def _upsert_document(db: Session, analysis: MessageAnalysis, existing: Document | None) -> Document:
    msg = analysis.message
    doc = existing
    if doc is None:
        doc = Document(
            message_id=msg.message_id,
            thread_id=msg.thread_id,
            subject=msg.subject[:1000],
            sender=msg.sender[:320],
            attachment_names=list(msg.attachment_names),
            body_text=msg.body_text,
            attachment_text=msg.attachment_text,
            content_fingerprint=content_fingerprint(msg.subject, msg.body_text, msg.attachment_text),
            received_at=msg.received_at,
        )
        db.add(doc)
    doc.is_reply = analysis.is_reply
    doc.sender_category = analysis.sender_category
    doc.direction = analysis.direction
    doc.needs_review = analysis.needs_review
    doc.review_reason = analysis.review_reason
    doc.escalated_to = analysis.escalated_to
    doc.extraction_tier = analysis.extraction_tier
    doc.extraction_error = analysis.extraction_error
    db.flush()
    return doc


def _store_observations(db: Session, doc: Document, analysis: MessageAnalysis) -> list[ExtractedField]:
    """Insert this analysis' observations; existing (field, value, tier) rows are reused.

    Earlier rows of the document that the analysis no longer reports are
    marked superseded so a rebuild only replays the current extraction.
    """
    tier = analysis.extraction_tier or "fast"
    existing = {
        (r.field_name, r.value): r
        for r in db.scalars(
            select(ExtractedField).where(
                ExtractedField.document_id == doc.id,
                ExtractedField.extraction_tier == tier,
            )
        )
    }
    rows: list[ExtractedField] = []
    for obs in analysis.observations:
        row = existing.get((obs.field_name, obs.value))
        if row is None:
            row = ExtractedField(
                document_id=doc.id,
                field_name=obs.field_name,
                value=obs.value,
                confidence=obs.confidence,
                source_document_type=doc.document_type,
                authority_level=authority_level(obs.field_name, doc.document_type),
                extraction_tier=tier,
                resolution=REJECTED if obs.rejection_reason else ACCEPTED,
                rejection_reason=obs.rejection_reason,
                observed_at=doc.received_at,
            )
            db.add(row)
            existing[(obs.field_name, obs.value)] = row
        else:
            # Re-classification may change the source type and with it the authority
            row.source_document_type = doc.document_type
            row.authority_level = authority_level(row.field_name, doc.document_type)
            row.confidence = obs.confidence
            row.resolution = REJECTED if obs.rejection_reason else ACCEPTED
            row.rejection_reason = obs.rejection_reason
        rows.append(row)

    db.flush()
    stale = db.scalars(
        select(ExtractedField).where(
            ExtractedField.document_id == doc.id,
            ExtractedField.id.not_in([r.id for r in rows]),
            ExtractedField.resolution != SUPERSEDED,
        )
    ).all()
    for row in stale:
        row.resolution = SUPERSEDED
    if stale:
        logger.debug("Document {}: {} earlier observations superseded", doc.id, len(stale))
        db.flush()
    return rows


def _apply_to_shipment(
    db: Session, doc: Document, rows: list[ExtractedField], shipment: Shipment, method: str, reprocess: bool
) -> ProcessResult:
    result = ProcessResult(
        message_id=doc.message_id,
        status="reprocessed" if reprocess else "processed",
        document_id=doc.id,
        shipment_id=shipment.id,
        document_type=doc.document_type,
    )
    with shipment_lock(db, shipment.id):
        link_document(db, doc, shipment, method)

        tracks_revisions = not is_communication_type(doc.document_type) and any(
            r.resolution != REJECTED for r in rows
        )
        fingerprint = document_fingerprint(rows) if tracks_revisions else None
        duplicate = (
            find_duplicate(db, shipment.id, doc.document_type, fingerprint) if fingerprint else None
        )

        if duplicate is not None and duplicate.source_document_id != doc.id:
            for row in rows:
                if row.resolution != REJECTED:
                    row.resolution = DUPLICATE
            result.status = "duplicate_revision"
            result.revision_number = duplicate.revision_number
            logger.info(
                "Document {} duplicates {} revision {} of shipment {}",
                doc.id, doc.document_type, duplicate.revision_number, shipment.booking_number,
            )
            db.flush()
        elif reprocess:
            result.changed_fields = rebuild_shipment(db, shipment)["changed_fields"]
        else:
            result.changed_fields = apply_fields(db, shipment, rows)

        if fingerprint and result.status != "duplicate_revision":
            revision = register_revision(db, shipment, doc, fingerprint, result.changed_fields)
            result.revision_number = revision.revision_number

        if not reprocess:
            workflow.apply_document(db, shipment, doc.document_type, doc.direction, doc.id)
    return result


def apply_analysis(db: Session, analysis: MessageAnalysis, *, reprocess: bool = False) -> ProcessResult:
    """Persist one analysis and reconcile the affected shipment. Caller commits."""
    msg = analysis.message
    existing = db.scalar(select(Document).where(Document.message_id == msg.message_id))
    if existing is not None and not reprocess:
        logger.debug("Message {} already stored as document {}", msg.message_id, existing.id)
        return ProcessResult(
            message_id=msg.message_id,
            status="duplicate_message",
            document_id=existing.id,
            document_type=existing.document_type,
        )

    previous_link = current_link(db, existing.id) if existing is not None else None
    previous_shipment_id = previous_link.shipment_id if previous_link else None

    doc = _upsert_document(db, analysis, existing)
    save_classification(db, doc, analysis.classification)
    rows = _store_observations(db, doc, analysis)

    shipment, method = resolve_or_create(db, doc, rows)
    if shipment is None:
        result = ProcessResult(
            message_id=msg.message_id, status="unlinked",
            document_id=doc.id, document_type=doc.document_type,
        )
    else:
        result = _apply_to_shipment(db, doc, rows, shipment, method, reprocess)
    result.action = analysis.action

    if previous_shipment_id and previous_shipment_id != result.shipment_id:
        _rebuild_detached(db, previous_shipment_id)

    if doc.thread_id:
        refresh_thread(db, doc.thread_id)
    db.flush()
    return result


def _rebuild_detached(db: Session, shipment_id: int) -> None:
    """A reprocessed document moved away; rebuild the shipment it left."""
    shipment = db.get(Shipment, shipment_id)
    if shipment is None:
        return
    with shipment_lock(db, shipment_id):
        rebuild_shipment(db, shipment)


async def process_message(db: Session, message: InboundMessage, *, reprocess: bool = False) -> ProcessResult:
    """Analyze and apply one message, committing on success."""
    analysis = await analyze_message(message)
    try:
        result = apply_analysis(db, analysis, reprocess=reprocess)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return result


async def process_batch(
    db: Session,
    messages: list[InboundMessage],
    *,
    reprocess: bool = False,
    batch_size: int = 20,
) -> BatchResult:
    """Process many messages. One failure never stops the batch.

    Oracle calls run under Semaphore(llm_concurrency); the client spaces the
    calls themselves. Analyses are applied in arrival order.
    """
    sem = asyncio.Semaphore(max(1, settings.llm_concurrency))
    summary = BatchResult()

    async def _analyze(msg: InboundMessage) -> MessageAnalysis:
        async with sem:
            return await analyze_message(msg)

    ordered = sorted(messages, key=lambda m: (m.received_at, m.message_id))
    for i in range(0, len(ordered), batch_size):
        chunk = ordered[i:i + batch_size]
        analyses = await asyncio.gather(*[_analyze(m) for m in chunk], return_exceptions=True)

        for msg, analysis in zip(chunk, analyses):
            summary.processed += 1
            if isinstance(analysis, BaseException):
                summary.failures.append(_failure(msg, analysis))
                logger.warning("Analysis failed for {}: {}", msg.message_id, analysis)
                continue
            try:
                summary.results.append(apply_analysis(db, analysis, reprocess=reprocess))
                db.commit()
            except Exception as e:
                db.rollback()
                summary.failures.append(_failure(msg, e))
                logger.opt(exception=e).warning("Processing failed for {}", msg.message_id)

    statuses: dict[str, int] = {}
    for r in summary.results:
        statuses[r.status] = statuses.get(r.status, 0) + 1
    logger.info(
        "Batch done: {} messages, {} failed, {}",
        summary.processed, summary.failed,
        ", ".join(f"{k}={v}" for k, v in sorted(statuses.items())) or "nothing applied",
    )
    return summary


def _failure(message: InboundMessage, error: BaseException) -> dict:
    return {
        "message_id": message.message_id,
        "error_type": type(error).__name__,
        "error": str(error)[:300],
    }
