"""Workflow state machine — shipment lifecycle derived from linked documents.

A shipment's state is the highest-priority candidate over ALL linked
documents, not the latest one. Each (document type, direction) pair maps to
one state in workflow_states.json; e.g. a booking confirmation received from
the carrier is booking_confirmation_received, the same document forwarded to
the customer is booking_confirmation_shared.

Two entry points:
  apply_document()      — after a document is linked; only ever moves forward
  reconcile_shipment()  — recompute from scratch; update only when different

Terminal states (POD received / shared) are never regressed; from a terminal
state only a higher-priority terminal state is reachable.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Document, Shipment, ShipmentDocument, WorkflowState, WorkflowTransition
from ..rule_config import get_workflow_rules


@dataclass(frozen=True)
class Candidate:
    state: str
    phase: str
    priority: int
    terminal: bool
    document_type: str
    document_id: int | None


def state_for(document_type: str | None, direction: str | None) -> dict | None:
    """Canonical state for a (document type, direction) pair, or None."""
    if not document_type or not direction:
        return None
    return get_workflow_rules()["states_by_document"].get((document_type, direction))


def state_definition(state: str) -> dict | None:
    return get_workflow_rules()["states_by_key"].get(state)


def candidate_for(document_type: str, direction: str, document_id: int | None = None) -> Candidate | None:
    s = state_for(document_type, direction)
    if s is None:
        return None
    return Candidate(
        state=s["key"],
        phase=s["phase"],
        priority=s["order"],
        terminal=s["terminal"],
        document_type=document_type,
        document_id=document_id,
    )


def _ts(dt: datetime | None) -> float:
    if dt is None:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def compute_state(documents) -> Candidate | None:
    """Highest-priority candidate over (document_type, direction, document_id, received_at) tuples.

    Ties on priority go to the earliest document that reached the state.
    """
    best: Candidate | None = None
    best_key = None
    for doc_type, direction, doc_id, received_at in documents:
        c = candidate_for(doc_type, direction, doc_id)
        if c is None:
            continue
        key = (c.priority, -_ts(received_at), -(doc_id or 0))
        if best_key is None or key > best_key:
            best, best_key = c, key
    return best


def _linked_documents(db: Session, shipment_id: int):
    rows = db.execute(
        select(
            ShipmentDocument.document_type,
            ShipmentDocument.direction,
            ShipmentDocument.document_id,
            Document.received_at,
        )
        .join(Document, Document.id == ShipmentDocument.document_id)
        .where(ShipmentDocument.shipment_id == shipment_id)
    ).all()
    return [tuple(r) for r in rows]


def current_state(db: Session, shipment_id: int) -> WorkflowState | None:
    return db.scalar(select(WorkflowState).where(WorkflowState.shipment_id == shipment_id))


def _transition(
    db: Session, shipment: Shipment, ws: WorkflowState | None, target: Candidate, reason: str
) -> WorkflowTransition:
    from_state = ws.state if ws else None
    from_phase = ws.phase if ws else None
    if ws is None:
        ws = WorkflowState(shipment_id=shipment.id)
        db.add(ws)
    ws.state = target.state
    ws.phase = target.phase
    ws.priority = target.priority
    ws.triggering_document_type = target.document_type
    ws.triggering_document_id = target.document_id

    transition = WorkflowTransition(
        shipment_id=shipment.id,
        from_state=from_state,
        to_state=target.state,
        from_phase=from_phase,
        to_phase=target.phase,
        triggering_document_type=target.document_type,
        triggering_document_id=target.document_id,
        reason=reason,
    )
    db.add(transition)
    db.flush()
    logger.info(
        "Shipment {}: {} → {} ({}, triggered by {})",
        shipment.booking_number, from_state or "none", target.state, reason, target.document_type,
    )
    return transition


def apply_document(
    db: Session, shipment: Shipment, document_type: str, direction: str, document_id: int | None = None
) -> WorkflowTransition | None:
    """Advance the state if this document implies a higher-priority milestone."""
    target = candidate_for(document_type, direction, document_id)
    if target is None:
        return None
    ws = current_state(db, shipment.id)
    if ws is not None:
        if target.priority <= ws.priority:
            return None
        if (state_definition(ws.state) or {}).get("terminal") and not target.terminal:
            return None
    return _transition(db, shipment, ws, target, "document")


def reconcile_shipment(db: Session, shipment: Shipment, *, reason: str = "reconciliation") -> WorkflowTransition | None:
    """Recompute the state from every linked document; write only if different."""
    db.flush()
    target = compute_state(_linked_documents(db, shipment.id))
    ws = current_state(db, shipment.id)

    if ws is not None and (state_definition(ws.state) or {}).get("terminal"):
        if target is None or not target.terminal:
            logger.debug("Shipment {} stays in terminal state {}", shipment.booking_number, ws.state)
            return None

    if target is None:
        if ws is not None:
            logger.info(
                "Shipment {}: no linked document implies a state, clearing {}",
                shipment.booking_number, ws.state,
            )
            db.delete(ws)
            db.flush()
        return None

    if ws is not None and ws.state == target.state:
        if ws.triggering_document_id != target.document_id:
            ws.triggering_document_id = target.document_id
            ws.triggering_document_type = target.document_type
        return None
    return _transition(db, shipment, ws, target, reason)


def reconcile_all(db: Session, *, commit: bool = True) -> dict:
    """Nightly pass over every shipment. Returns {checked, updated}."""
    checked = updated = 0
    for shipment in db.scalars(select(Shipment).order_by(Shipment.id)).all():
        checked += 1
        if reconcile_shipment(db, shipment) is not None:
            updated += 1
    if commit:
        db.commit()
    logger.info("Workflow reconciliation: {} shipments checked, {} updated", checked, updated)
    return {"checked": checked, "updated": updated}
