"""Shipment linker — which shipment does a document belong to?

Exact matches only, in this order:
  1. booking number
  2. bill of lading number (master, then house)
  3. container number (any accepted observation on a linked document)
  4. thread authority (replies that carry no identifier of their own)

A non-communication document with a booking number that matches nothing
creates the shipment. Substring matching is never used: it is how replies
end up on the wrong shipment when booking numbers share a prefix.
"""

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Document, ExtractedField, Shipment, ShipmentDocument, ThreadAuthority
from .confidence import is_communication_type


def find_by_identifier(db: Session, identifier_type: str, value: str) -> Shipment | None:
    """Exact lookup of a shipment by one normalized identifier."""
    if not value:
        return None
    if identifier_type == "booking_number":
        return db.scalar(select(Shipment).where(Shipment.booking_number == value))
    if identifier_type == "bl_number":
        return db.scalar(
            select(Shipment).where(Shipment.bl_number == value).order_by(Shipment.id)
        ) or db.scalar(select(Shipment).where(Shipment.hbl_number == value).order_by(Shipment.id))
    if identifier_type in ("container_number", "reference_number"):
        shipment_id = db.scalar(
            select(ShipmentDocument.shipment_id)
            .join(ExtractedField, ExtractedField.document_id == ShipmentDocument.document_id)
            .where(
                ExtractedField.field_name == identifier_type,
                ExtractedField.value == value,
                ExtractedField.resolution == "accepted",
            )
            .order_by(ShipmentDocument.shipment_id)
            .limit(1)
        )
        return db.get(Shipment, shipment_id) if shipment_id else None
    return None


def _best(identifiers: dict[str, list[tuple[str, float]]], name: str) -> list[str]:
    """Values for one identifier, most confident first."""
    return [v for v, _ in sorted(identifiers.get(name, []), key=lambda p: (-p[1], p[0]))]


def document_identifiers(rows: list[ExtractedField]) -> dict[str, list[tuple[str, float]]]:
    ids: dict[str, list[tuple[str, float]]] = {}
    for row in rows:
        if row.resolution in ("rejected", "superseded"):
            continue
        if row.field_name in ("booking_number", "bl_number", "hbl_number", "container_number", "reference_number"):
            ids.setdefault(row.field_name, []).append((row.value, row.confidence or 0))
    return ids


def find_shipment(
    db: Session, document: Document, rows: list[ExtractedField]
) -> tuple[Shipment | None, str | None]:
    """Resolve an existing shipment. Returns (shipment, link_method)."""
    ids = document_identifiers(rows)
    for value in _best(ids, "booking_number"):
        shipment = find_by_identifier(db, "booking_number", value)
        if shipment:
            return shipment, "booking_number"
    for value in _best(ids, "bl_number") + _best(ids, "hbl_number"):
        shipment = find_by_identifier(db, "bl_number", value)
        if shipment:
            return shipment, "bl_number"
    for value in _best(ids, "container_number"):
        shipment = find_by_identifier(db, "container_number", value)
        if shipment:
            return shipment, "container_number"

    if document.thread_id:
        authority = db.scalar(
            select(ThreadAuthority).where(ThreadAuthority.thread_id == document.thread_id)
        )
        if authority and authority.authority_document_id != document.id:
            shipment = find_by_identifier(db, authority.identifier_type, authority.identifier_value)
            if shipment:
                return shipment, "thread_authority"
    return None, None


def resolve_or_create(
    db: Session, document: Document, rows: list[ExtractedField]
) -> tuple[Shipment | None, str | None]:
    """find_shipment(), creating the shipment from a shipping document's booking number."""
    shipment, method = find_shipment(db, document, rows)
    if shipment is not None:
        return shipment, method
    if is_communication_type(document.document_type):
        return None, None
    bookings = _best(document_identifiers(rows), "booking_number")
    if not bookings:
        return None, None
    shipment = Shipment(booking_number=bookings[0], container_numbers=[])
    db.add(shipment)
    db.flush()
    logger.info(
        "Created shipment {} from {} (document {})",
        shipment.booking_number, document.document_type, document.id,
    )
    return shipment, "created"


def current_link(db: Session, document_id: int) -> ShipmentDocument | None:
    return db.scalar(select(ShipmentDocument).where(ShipmentDocument.document_id == document_id))


def link_document(db: Session, document: Document, shipment: Shipment, method: str) -> ShipmentDocument:
    """Link (or re-point) a document to a shipment. One link per document."""
    link = current_link(db, document.id)
    if link is None:
        link = ShipmentDocument(document_id=document.id)
        db.add(link)
    link.shipment_id = shipment.id
    link.document_type = document.document_type or "unknown"
    link.direction = document.direction
    link.link_method = method
    db.flush()
    logger.debug("Linked document {} to shipment {} via {}", document.id, shipment.booking_number, method)
    return link
