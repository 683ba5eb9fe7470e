"""Field extraction — tiered oracle calls, normalization, boundary validation.

The oracle returns free-text values; this module turns them into normalized
observations and rejects hallucinated dates before the authority resolver
ever sees them.

Tiers:
  fast   → first pass for every document
  smart  → escalate_sonnet re-extraction
  strong → escalate_opus re-extraction
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone

from loguru import logger
from pydantic import ValidationError

from ..config import settings
from ..exceptions import ExtractionError
from ..schemas.messages import InboundMessage
from ..schemas.oracle import EXTRACTION_SCHEMA, ExtractionOutput
from ..utils.claude_client import claude_structured
from ..utils.normalization import DATE_FIELDS, normalize_field_value, parse_date_value

SYSTEM_PROMPT = """You extract shipment data from freight forwarding emails and their attachments.

Only extract values that are explicitly stated. Never guess or infer.
- booking_number: carrier booking reference
- bl_number: master bill of lading number; hbl_number: house bill of lading number
- container_number: one entry per container (4 letters + 7 digits)
- etd / eta and cutoffs (si_cutoff, vgm_cutoff, cargo_cutoff, gate_cutoff, doc_cutoff):
  use the date exactly as written, include the time when one is given
- ports and places: the UN/LOCODE or port name as written
- confidence is 0-100 per field; overall_confidence reflects the whole extraction
Omit any field you are not sure about."""

MAX_VALUE_LENGTH = 1000


@dataclass
class FieldObservation:
    field_name: str
    value: str
    confidence: float
    rejection_reason: str | None = None


def _build_prompt(message: InboundMessage, document_type: str) -> str:
    return (
        f"Document type: {document_type}\n"
        f"Subject: {message.subject}\n"
        f"From: {message.sender}\n"
        f"Received: {message.received_at.isoformat()}\n\n"
        f"Body:\n{(message.body_text or '')[:8000]}\n\n"
        f"Attachment text:\n{(message.attachment_text or '')[:12000] or '(none)'}"
    )


def _split_values(value) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v not in (None, "")]
    return [str(value)]


def normalize_output(output: ExtractionOutput) -> list[FieldObservation]:
    """Normalize oracle values field by field.

    Container numbers fan out to one observation each. Dates that cannot be
    parsed are kept with a rejection reason so they show up in the audit trail.
    """
    observations: list[FieldObservation] = []
    seen: set[tuple[str, str]] = set()
    for item in output.known_fields():
        raw_values = _split_values(item.value)
        if item.field_name == "container_number" and len(raw_values) == 1:
            raw_values = [v for v in raw_values[0].replace(";", ",").split(",") if v.strip()]
        for raw in raw_values:
            value = normalize_field_value(item.field_name, raw)
            reason = None
            if value is None:
                if item.field_name not in DATE_FIELDS:
                    logger.debug("Dropping unusable {} value {!r}", item.field_name, raw)
                    continue
                value, reason = raw.strip()[:MAX_VALUE_LENGTH], "unparseable_date"
            key = (item.field_name, value)
            if key in seen:
                continue
            seen.add(key)
            observations.append(FieldObservation(
                field_name=item.field_name,
                value=value[:MAX_VALUE_LENGTH],
                confidence=item.confidence,
                rejection_reason=reason,
            ))
    return observations


def temporal_rejection(field_name: str, value: str, received_at: datetime) -> str | None:
    """Reason to reject a date value, or None when it is plausible."""
    if field_name not in DATE_FIELDS:
        return None
    dt = parse_date_value(value)
    if dt is None:
        return "unparseable_date"
    if dt < datetime.combine(settings.data_collection_start, time()):
        return "before_data_collection_start"
    anchor = received_at
    if anchor.tzinfo is not None:
        anchor = anchor.astimezone(timezone.utc).replace(tzinfo=None)
    if dt > anchor + timedelta(days=settings.max_future_days):
        return "too_far_in_future"
    return None


def validate_observations(observations: list[FieldObservation], received_at: datetime) -> list[FieldObservation]:
    """Mark hallucinated dates as rejected. Returns the same list."""
    for obs in observations:
        if obs.rejection_reason:
            continue
        reason = temporal_rejection(obs.field_name, obs.value, received_at)
        if reason:
            logger.warning(
                "Rejected {}={} ({}), document received {}",
                obs.field_name, obs.value, reason, received_at.date(),
            )
            obs.rejection_reason = reason
    return observations


async def extract_fields(
    message: InboundMessage, document_type: str, *, tier: str = "fast"
) -> tuple[list[FieldObservation], float]:
    """Run the extraction oracle at one tier.

    Returns (observations, overall_confidence). Raises ExtractionError when the
    oracle fails or its payload does not validate.
    """
    raw = await claude_structured(
        _build_prompt(message, document_type),
        EXTRACTION_SCHEMA,
        system=SYSTEM_PROMPT,
        model_tier=tier,
        max_tokens=2048,
    )
    if raw is None:
        raise ExtractionError(f"extraction oracle returned nothing for {message.message_id}", tier=tier)
    try:
        output = ExtractionOutput.model_validate(raw)
    except ValidationError as e:
        raise ExtractionError(
            f"malformed extraction payload for {message.message_id}: {e.error_count()} errors",
            tier=tier,
        ) from e

    observations = validate_observations(normalize_output(output), message.received_at)
    logger.info(
        "Extracted {} fields from {} at {} tier ({:.0f}%)",
        len(observations), message.message_id, tier, output.overall_confidence,
    )
    return observations, output.overall_confidence


def observations_as_fields(observations: list[FieldObservation]) -> dict:
    """Flatten accepted observations for the confidence engine. Containers as a list."""
    fields: dict = {}
    best: dict[str, float] = {}
    for obs in observations:
        if obs.rejection_reason:
            continue
        if obs.field_name == "container_number":
            fields.setdefault("container_number", []).append(obs.value)
        elif obs.confidence > best.get(obs.field_name, -1):
            fields[obs.field_name] = obs.value
            best[obs.field_name] = obs.confidence
    return fields
