"""Full-history rebuild of one shipment: field provenance, then workflow state."""

from loguru import logger
from sqlalchemy.orm import Session

from ..models import Shipment
from .authority import rebuild_fields
from .workflow import reconcile_shipment


def rebuild_shipment(db: Session, shipment: Shipment, *, reason: str = "reconciliation") -> dict:
    """Replay every linked document. Caller holds the shipment lock.

    Returns {"changed_fields": [...], "state": <state or None>}.
    """
    changed = rebuild_fields(db, shipment)
    transition = reconcile_shipment(db, shipment, reason=reason)
    if transition is not None:
        logger.info("Rebuild moved shipment {} to {}", shipment.booking_number, transition.to_state)
    return {
        "changed_fields": changed,
        "state": transition.to_state if transition else None,
    }
