"""Authority resolver — field-granular conflict resolution with provenance.

Every shipment field value is owned by one ExtractedField, recorded in a
ShipmentFieldValue row. An incoming observation replaces the owner only if
its authority key is strictly greater:

    (authority_level, confidence, observed_at, document_id, value)

Authority dominates, so a lower-authority source can never change a value
set by a higher one. The key is a total order, so the winner of a field is
the maximum over all observations regardless of arrival order, and
rebuild_fields() always reproduces what incremental application produced.

Special fields:
  booking_number   — the shipment key; observations never overwrite it
  container_number — accumulates (set union), nothing competes
"""

from datetime import datetime, timezone
from typing import Any

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..models import ExtractedField, Shipment, ShipmentDocument, ShipmentFieldValue
from ..rule_config import get_authority_rules
from ..utils.normalization import DATE_FIELDS, SHIPMENT_FIELDS, parse_date_value

ACCEPTED = "accepted"
DISCARDED = "discarded"
DUPLICATE = "duplicate"
REJECTED = "rejected"
SUPERSEDED = "superseded"

# Rows that never take part in resolution
INACTIVE = (REJECTED, SUPERSEDED)


def authority_level(field_name: str, document_type: str | None) -> int:
    rules = get_authority_rules()
    table = rules["fields"].get(field_name, {})
    return int(table.get(document_type or "unknown", rules["default_level"]))


def _ts(dt: datetime | None) -> float:
    if dt is None:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def authority_key(row: ExtractedField) -> tuple:
    return (row.authority_level, row.confidence or 0, _ts(row.observed_at), row.document_id or 0, row.value)


def _provenance_key(fv: ShipmentFieldValue) -> tuple:
    return (fv.authority_level, fv.confidence or 0, _ts(fv.observed_at), fv.source_document_id or 0, fv.value)


def _set_column(shipment: Shipment, field_name: str, value: str) -> None:
    if field_name in DATE_FIELDS:
        dt = parse_date_value(value)
        setattr(shipment, field_name, dt.replace(tzinfo=timezone.utc) if dt else None)
    else:
        setattr(shipment, field_name, value)


def _own(fv: ShipmentFieldValue, row: ExtractedField, value: str | None = None) -> None:
    fv.value = value if value is not None else row.value
    fv.authority_level = row.authority_level
    fv.confidence = row.confidence or 0
    fv.source_document_type = row.source_document_type
    fv.source_document_id = row.document_id
    fv.source_extraction_id = row.id
    fv.observed_at = row.observed_at


def _new_provenance(db: Session, shipment: Shipment, row: ExtractedField, value: str | None = None) -> ShipmentFieldValue:
    fv = ShipmentFieldValue(shipment_id=shipment.id, field_name=row.field_name)
    _own(fv, row, value)
    db.add(fv)
    return fv


def load_provenance(db: Session, shipment: Shipment) -> dict[str, ShipmentFieldValue]:
    rows = db.scalars(
        select(ShipmentFieldValue).where(ShipmentFieldValue.shipment_id == shipment.id)
    ).all()
    return {fv.field_name: fv for fv in rows}


def snapshot(shipment: Shipment, provenance: dict[str, ShipmentFieldValue]) -> dict[str, Any]:
    """Current resolved value per tracked field."""
    snap: dict[str, Any] = {name: fv.value for name, fv in provenance.items()}
    snap["booking_number"] = shipment.booking_number
    snap["container_number"] = sorted(shipment.container_numbers or [])
    return snap


def _mark_overwritten(db: Session, shipment_id: int, field_name: str, old_value: str) -> None:
    """Rows that backed an overwritten value become discarded."""
    db.flush()
    rows = db.scalars(
        select(ExtractedField)
        .join(ShipmentDocument, ShipmentDocument.document_id == ExtractedField.document_id)
        .where(
            ShipmentDocument.shipment_id == shipment_id,
            ExtractedField.field_name == field_name,
            ExtractedField.value == old_value,
        )
    ).all()
    for r in rows:
        if r.resolution == ACCEPTED:
            r.resolution = DISCARDED


def _apply_container(db: Session, shipment: Shipment, row: ExtractedField, provenance: dict) -> None:
    containers = set(shipment.container_numbers or [])
    row.resolution = ACCEPTED
    if row.value in containers:
        return
    containers.add(row.value)
    shipment.container_numbers = sorted(containers)
    joined = ",".join(shipment.container_numbers)
    fv = provenance.get("container_number")
    if fv is None:
        provenance["container_number"] = _new_provenance(db, shipment, row, joined)
    elif authority_key(row) > _provenance_key(fv):
        _own(fv, row, joined)
    else:
        fv.value = joined


def apply_field(db: Session, shipment: Shipment, row: ExtractedField, provenance: dict[str, ShipmentFieldValue]) -> None:
    """Resolve one observation against the shipment. Sets row.resolution."""
    field = row.field_name
    if field == "container_number":
        _apply_container(db, shipment, row, provenance)
        return

    if field == "booking_number" and row.value != shipment.booking_number:
        row.resolution = DISCARDED
        logger.debug(
            "Shipment {} booking number {} kept; discarded {} from document {}",
            shipment.id, shipment.booking_number, row.value, row.document_id,
        )
        return

    fv = provenance.get(field)
    if fv is None:
        provenance[field] = _new_provenance(db, shipment, row)
        _set_column(shipment, field, row.value)
        row.resolution = ACCEPTED
        return

    if authority_key(row) <= _provenance_key(fv):
        if row.value == fv.value:
            row.resolution = ACCEPTED
        else:
            row.resolution = DISCARDED
            logger.debug(
                "Discarded {}={!r} from {} (authority {}); keeping {!r} from {} (authority {})",
                field, row.value, row.source_document_type, row.authority_level,
                fv.value, fv.source_document_type, fv.authority_level,
            )
        return

    if row.value != fv.value:
        _mark_overwritten(db, shipment.id, field, fv.value)
        _set_column(shipment, field, row.value)
    _own(fv, row)
    row.resolution = ACCEPTED


def apply_fields(db: Session, shipment: Shipment, rows: list[ExtractedField]) -> list[str]:
    """Apply a document's observations. Returns the fields whose value changed."""
    provenance = load_provenance(db, shipment)
    before = snapshot(shipment, provenance)
    for row in rows:
        if row.resolution in INACTIVE or row.resolution == DUPLICATE:
            continue
        apply_field(db, shipment, row, provenance)
    after = snapshot(shipment, provenance)
    db.flush()
    return sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))


def _already_held(shipment: Shipment, row: ExtractedField, provenance: dict[str, ShipmentFieldValue]) -> bool:
    if row.field_name == "container_number":
        return row.value in (shipment.container_numbers or [])
    if row.field_name == "booking_number":
        return True
    fv = provenance.get(row.field_name)
    return fv is not None and fv.value == row.value


def linked_observations(db: Session, shipment_id: int) -> list[ExtractedField]:
    return db.scalars(
        select(ExtractedField)
        .join(ShipmentDocument, ShipmentDocument.document_id == ExtractedField.document_id)
        .where(ShipmentDocument.shipment_id == shipment_id)
        .order_by(ExtractedField.id)
    ).all()


def rebuild_fields(db: Session, shipment: Shipment) -> list[str]:
    """Recompute every field and its provenance from the linked history.

    Returns the fields whose value differs from before the rebuild.
    """
    db.flush()
    before = snapshot(shipment, load_provenance(db, shipment))

    db.execute(delete(ShipmentFieldValue).where(ShipmentFieldValue.shipment_id == shipment.id))
    db.expire(shipment, ["field_values"])
    for name in SHIPMENT_FIELDS:
        if name in ("booking_number", "container_number"):
            continue
        setattr(shipment, name, None)
    shipment.container_numbers = []

    provenance: dict[str, ShipmentFieldValue] = {}
    duplicates: list[ExtractedField] = []
    for row in linked_observations(db, shipment.id):
        if row.resolution in INACTIVE:
            continue
        if row.resolution == DUPLICATE:
            duplicates.append(row)
            continue
        apply_field(db, shipment, row, provenance)
    # Duplicate rows repeat values already present unless their original
    # document has since moved away; only then do they contribute.
    for row in duplicates:
        if _already_held(shipment, row, provenance):
            continue
        apply_field(db, shipment, row, provenance)
        row.resolution = DUPLICATE
    # Final standing: any row whose value is the current value is accepted
    for row in linked_observations(db, shipment.id):
        if row.resolution not in (ACCEPTED, DISCARDED) or row.field_name == "container_number":
            continue
        current = shipment.booking_number if row.field_name == "booking_number" else (
            provenance[row.field_name].value if row.field_name in provenance else None
        )
        row.resolution = ACCEPTED if row.value == current else DISCARDED
    db.flush()

    after = snapshot(shipment, provenance)
    changed = sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))
    if changed:
        logger.info("Rebuilt shipment {}: {} changed", shipment.booking_number, ", ".join(changed))
    return changed
