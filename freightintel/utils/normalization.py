"""Deterministic normalization — pure Python, no AI.

Normalizes shipment values extracted from emails and attachments:
  - Booking / BL numbers: " maeu 262175704 " → "MAEU262175704"
  - Container numbers: "MRKU 723019-0" → "MRKU7230190" (ISO 6346 shape)
  - Dates: "12-Jan-2025 14:00" → "2025-01-12T14:00", "12/01/2025" → "2025-01-12"
  - Free text (vessel, ports, parties): collapsed whitespace, upper-cased

Fingerprints used for deduplication live here too, so every caller hashes
the same normalized form.

Design: Prefer less data if it means better data. Return None for ambiguous values.
"""

import hashlib
import json
import re
from datetime import date, datetime
from typing import Any

from dateutil import parser as date_parser

# ── Field families ────────────────────────────────────────────────────

DATE_FIELDS = frozenset({
    "etd",
    "eta",
    "si_cutoff",
    "vgm_cutoff",
    "cargo_cutoff",
    "gate_cutoff",
    "doc_cutoff",
})

IDENTIFIER_FIELDS = frozenset({
    "booking_number",
    "bl_number",
    "hbl_number",
    "container_number",
    "reference_number",
})

# Every field the engine tracks on a shipment, in display order
SHIPMENT_FIELDS = (
    "booking_number",
    "bl_number",
    "hbl_number",
    "container_number",
    "reference_number",
    "carrier_name",
    "vessel_name",
    "voyage_number",
    "port_of_loading",
    "port_of_discharge",
    "place_of_receipt",
    "place_of_delivery",
    "etd",
    "eta",
    "si_cutoff",
    "vgm_cutoff",
    "cargo_cutoff",
    "gate_cutoff",
    "doc_cutoff",
    "shipper_name",
    "consignee_name",
    "notify_party",
    "commodity",
)

# ── Identifiers ───────────────────────────────────────────────────────

_CONTAINER_RE = re.compile(r"^[A-Z]{3}[UJZ]\d{7}$")


def normalize_identifier(raw: Any) -> str | None:
    """Uppercase, strip separators. Returns None for implausibly short values."""
    if raw is None:
        return None
    s = str(raw).strip().upper().strip("'\"")
    s = re.sub(r"[\s\-_/.#:]", "", s)
    if len(s) < 4:
        return None
    return s


def normalize_container_number(raw: Any) -> str | None:
    """Normalize to the ISO 6346 shape (4 letters + 7 digits) or None."""
    s = normalize_identifier(raw)
    if not s or not _CONTAINER_RE.match(s):
        return None
    return s


def container_check_digit_ok(container: str) -> bool:
    """Validate the ISO 6346 check digit of a normalized container number."""
    if not container or not _CONTAINER_RE.match(container):
        return False
    total = 0
    for i, ch in enumerate(container[:10]):
        if ch.isdigit():
            value = int(ch)
        else:
            # A=10 … skipping multiples of 11
            value = ord(ch) - ord("A") + 10
            value += (value - 1) // 10
        total += value * (2 ** i)
    return (total % 11) % 10 == int(container[10])


# ── Dates ─────────────────────────────────────────────────────────────


def parse_date_value(raw: Any) -> datetime | None:
    """Parse an extracted date/time. Day-first for ambiguous numeric dates."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.replace(tzinfo=None)
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day)
    s = str(raw).strip()
    if not s:
        return None
    try:
        if re.match(r"^\d{4}-\d{2}-\d{2}", s):
            return date_parser.isoparse(s).replace(tzinfo=None)
        return date_parser.parse(s, dayfirst=True, fuzzy=True).replace(tzinfo=None)
    except (ValueError, OverflowError):
        return None


def normalize_date(raw: Any) -> str | None:
    """Render as ISO date, or ISO date+minutes when a time is present."""
    dt = parse_date_value(raw)
    if dt is None:
        return None
    if dt.hour or dt.minute:
        return dt.strftime("%Y-%m-%dT%H:%M")
    return dt.strftime("%Y-%m-%d")


# ── Free text ─────────────────────────────────────────────────────────


def normalize_text(raw: Any) -> str | None:
    if raw is None:
        return None
    s = re.sub(r"\s+", " ", str(raw)).strip()
    return s.upper() or None


def normalize_field_value(field_name: str, raw: Any) -> str | None:
    """Dispatch to the right normalizer for a shipment field."""
    if field_name in DATE_FIELDS:
        return normalize_date(raw)
    if field_name == "container_number":
        return normalize_container_number(raw)
    if field_name in IDENTIFIER_FIELDS:
        return normalize_identifier(raw)
    return normalize_text(raw)


# ── Fingerprints ──────────────────────────────────────────────────────


def content_fingerprint(*parts: str | None) -> str:
    """Hash of normalized message text — lowercased, whitespace-collapsed."""
    text = " ".join(p for p in parts if p)
    normalized = re.sub(r"\s+", " ", text.lower()).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def fields_fingerprint(fields: dict[str, Any]) -> str:
    """Hash of a normalized extracted-field set, independent of order.

    Values may be scalars or lists (container numbers); lists are sorted.
    """
    canonical: dict[str, Any] = {}
    for name, value in fields.items():
        if value is None or value == "" or value == []:
            continue
        if isinstance(value, (list, tuple, set)):
            canonical[name] = sorted(str(v) for v in value)
        else:
            canonical[name] = str(value)
    blob = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()
