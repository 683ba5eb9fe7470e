"""Document classifier — carrier patterns first, LLM fallback.

Order of evaluation:
  1. Carrier chosen by sender domain; its patterns in descending priority
  2. Generic (any-sender) rules in descending priority
  3. Classification oracle (fast tier)
  4. Fallback: unknown, confidence 0

A pattern may require a PDF attachment, an attachment filename match, or an
attachment-content match. Unmet requirement → the pattern is skipped.

Pattern hits below the trust threshold (85 for originals, 90 for replies)
send the message to the oracle; the pattern result is kept if the oracle
has nothing better.

Replies/forwards without attachments are pure correspondence: any
attachment-bearing type is coerced to general_correspondence.
"""

from dataclasses import dataclass
from email.utils import parseaddr

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..models import Classification, Document
from ..rule_config import get_classification_rules
from ..schemas.messages import InboundMessage
from ..schemas.oracle import CLASSIFICATION_SCHEMA, ClassificationOutput
from ..utils.claude_client import claude_structured

SYSTEM_PROMPT = """You classify freight forwarding emails for an ocean freight forwarder.

Return the single best document_type for the email, in snake_case, from this list:
{types}

Rules:
- Classify by what the email carries, not what it talks about
- A reply that only discusses a document without attaching it is general_correspondence
- confidence is 0-100 and reflects how sure you are of the type
- If nothing fits, return unknown with low confidence"""


@dataclass
class ClassificationResult:
    document_type: str
    confidence: float
    method: str  # pattern | llm | fallback
    carrier_id: str | None = None
    matched_pattern: str | None = None
    reasoning: str = ""


# ── Sender helpers ────────────────────────────────────────────────────


def sender_domain(sender: str | None) -> str:
    """'Ops Team <ops@Maersk.com>' → 'maersk.com'."""
    _, addr = parseaddr(sender or "")
    if "@" not in addr:
        return ""
    return addr.rsplit("@", 1)[1].strip().lower()


def _domain_matches(domain: str, candidates) -> bool:
    return any(domain == d or domain.endswith("." + d) for d in candidates)


def carrier_for_sender(sender: str | None) -> dict | None:
    domain = sender_domain(sender)
    if not domain:
        return None
    for carrier in get_classification_rules()["carriers"]:
        if _domain_matches(domain, carrier["sender_domains"]):
            return carrier
    return None


def sender_category(sender: str | None) -> str:
    """internal | carrier | customer | unknown."""
    domain = sender_domain(sender)
    if not domain:
        return "unknown"
    if _domain_matches(domain, [d.lower() for d in settings.internal_domains]):
        return "internal"
    if carrier_for_sender(sender):
        return "carrier"
    return "customer"


def direction_for(category: str) -> str:
    return "outbound" if category == "internal" else "inbound"


def is_reply_subject(subject: str | None) -> bool:
    return bool(get_classification_rules()["reply_prefix_re"].match(subject or ""))


def strip_reply_prefixes(subject: str | None) -> str:
    """'RE: FW: Booking Confirmation' → 'Booking Confirmation'."""
    reply_re = get_classification_rules()["reply_prefix_re"]
    s = (subject or "").strip()
    while True:
        m = reply_re.match(s)
        if not m:
            return s
        s = s[m.end():].strip()


def normalize_document_type(raw: str | None) -> str:
    """Map oracle output onto a known type. Aliases first, then unknown."""
    rules = get_classification_rules()
    key = (raw or "").strip().lower().replace(" ", "_").replace("-", "_")
    key = rules["document_type_aliases"].get(key, key)
    if key in rules["document_types"]:
        return key
    return "unknown"


# ── Deterministic rules ───────────────────────────────────────────────


def _requirements_met(rule: dict, message: InboundMessage) -> bool:
    if rule["requires_pdf"] and not message.has_pdf:
        return False
    if rule["attachment_res"] and not any(
        rx.search(name) for rx in rule["attachment_res"] for name in message.attachment_names
    ):
        return False
    if rule["content_res"] and not any(
        rx.search(message.attachment_text or "") for rx in rule["content_res"]
    ):
        return False
    return True


def _first_match(rules: list[dict], subject: str, message: InboundMessage) -> tuple[dict, str] | None:
    for rule in rules:
        for rx in rule["subject_res"]:
            if rx.search(subject) and _requirements_met(rule, message):
                return rule, rx.pattern
    return None


def match_patterns(message: InboundMessage) -> ClassificationResult | None:
    """Run carrier rules, then generic rules. First match wins."""
    subject = strip_reply_prefixes(message.subject)
    carrier = carrier_for_sender(message.sender)
    if carrier:
        hit = _first_match(carrier["patterns"], subject, message)
        if hit:
            rule, pattern = hit
            return ClassificationResult(
                document_type=rule["document_type"],
                confidence=rule["confidence"],
                method="pattern",
                carrier_id=carrier["carrier_id"],
                matched_pattern=pattern,
                reasoning=f"{carrier['carrier_name']} pattern (priority {rule['priority']})",
            )

    hit = _first_match(get_classification_rules()["generic_rules"], subject, message)
    if hit:
        rule, pattern = hit
        return ClassificationResult(
            document_type=rule["document_type"],
            confidence=rule["confidence"],
            method="pattern",
            carrier_id=carrier["carrier_id"] if carrier else None,
            matched_pattern=pattern,
            reasoning=f"generic pattern (priority {rule['priority']})",
        )
    return None


# ── Oracle ────────────────────────────────────────────────────────────


def _build_prompt(message: InboundMessage) -> str:
    attachments = ", ".join(message.attachment_names) or "(none)"
    body = (message.body_text or "")[:4000]
    attachment_text = (message.attachment_text or "")[:4000]
    return (
        f"Subject: {message.subject}\n"
        f"From: {message.sender}\n"
        f"Attachments: {attachments}\n\n"
        f"Body:\n{body}\n\n"
        f"Attachment text:\n{attachment_text or '(none)'}"
    )


async def classify_with_oracle(message: InboundMessage) -> ClassificationResult | None:
    """Ask the classification oracle. None when it fails or returns junk."""
    types = sorted(get_classification_rules()["document_types"])
    raw = await claude_structured(
        _build_prompt(message),
        CLASSIFICATION_SCHEMA,
        system=SYSTEM_PROMPT.format(types=", ".join(types)),
        model_tier="fast",
        max_tokens=300,
    )
    if raw is None:
        return None
    try:
        parsed = ClassificationOutput.model_validate(raw)
    except ValidationError as e:
        logger.warning("Classification oracle returned malformed output for {}: {}", message.message_id, e)
        return None

    doc_type = normalize_document_type(parsed.document_type)
    if doc_type == "unknown" and parsed.document_type != "unknown":
        logger.info("Oracle type {!r} not recognised, using unknown", parsed.document_type)
    return ClassificationResult(
        document_type=doc_type,
        confidence=parsed.confidence,
        method="llm",
        reasoning=parsed.reasoning,
    )


# ── Guard & entry point ───────────────────────────────────────────────


def apply_correspondence_guard(result: ClassificationResult, message: InboundMessage) -> ClassificationResult:
    """Reply/forward with no attachments can't be an attachment-bearing type."""
    if not is_reply_subject(message.subject) or message.has_attachments:
        return result
    if result.document_type not in get_classification_rules()["attachment_bearing_types"]:
        return result
    logger.info(
        "Coercing {} → general_correspondence for reply without attachments ({})",
        result.document_type, message.message_id,
    )
    result.reasoning = (
        f"{result.reasoning}; coerced from {result.document_type} (reply without attachments)"
    ).lstrip("; ")
    result.document_type = "general_correspondence"
    return result


async def classify_message(message: InboundMessage) -> ClassificationResult:
    """Classify one message. Never raises; worst case is unknown/0/fallback."""
    rules = get_classification_rules()
    threshold = (
        rules["reply_pattern_min_confidence"]
        if is_reply_subject(message.subject)
        else rules["pattern_min_confidence"]
    )

    pattern_result = match_patterns(message)
    if pattern_result and pattern_result.confidence >= threshold:
        result = pattern_result
    else:
        result = await classify_with_oracle(message)
        if result is None:
            result = pattern_result or ClassificationResult(
                document_type="unknown",
                confidence=0,
                method="fallback",
                reasoning="no pattern matched and the classification oracle failed",
            )
        elif pattern_result and pattern_result.confidence > result.confidence:
            result = pattern_result

    result = apply_correspondence_guard(result, message)
    logger.info(
        "Classified {} as {} ({:.0f}%, {})",
        message.message_id, result.document_type, result.confidence, result.method,
    )
    return result


def save_classification(db: Session, document: Document, result: ClassificationResult) -> Classification:
    """Upsert the single Classification row for a document."""
    row = db.scalar(select(Classification).where(Classification.document_id == document.id))
    if row is None:
        row = Classification(document_id=document.id)
        db.add(row)
    row.document_type = result.document_type
    row.confidence = result.confidence
    row.method = result.method
    row.carrier_id = result.carrier_id
    row.matched_pattern = (result.matched_pattern or "")[:500] or None
    row.reasoning = result.reasoning

    document.document_type = result.document_type
    document.confidence = result.confidence
    db.flush()
    return row
