"""Confidence / escalation engine.

Maps (document type, confidence, extracted fields) to one action:

  Communication types (request, approval, ... unknown) never escalate:
    ≥ 85   → accept
    < 85   → flag_review
  Critical types (final_bl, house_bl, draft_bl, si_confirmation):
    ≥ 85   → accept
    55-84  → escalate_sonnet
    < 55   → escalate_opus
  Everything else, per-type thresholds (default shown):
    ≥ 85   → accept
    60-84  → flag_review
    < 60   → escalate_sonnet

When extracted fields are supplied the model's score is blended with two
objective signals first: completeness of the type's required fields and a
field-consistency score. All numbers come from confidence_thresholds.json.
"""

from typing import Any

from loguru import logger

from ..rule_config import get_confidence_rules
from ..utils.normalization import container_check_digit_ok, parse_date_value

ACCEPT = "accept"
FLAG_REVIEW = "flag_review"
ESCALATE_SONNET = "escalate_sonnet"
ESCALATE_OPUS = "escalate_opus"

# Re-extraction tier and model label for each escalation action
ESCALATION_TIERS = {ESCALATE_SONNET: "smart", ESCALATE_OPUS: "strong"}
ESCALATION_LABELS = {ESCALATE_SONNET: "sonnet", ESCALATE_OPUS: "opus"}

CONSISTENCY_PENALTY = 15
CONSISTENCY_FLOOR = 40


def is_communication_type(document_type: str | None) -> bool:
    return (document_type or "unknown") in get_confidence_rules()["communication_types"]


def is_critical_type(document_type: str | None) -> bool:
    return document_type in get_confidence_rules()["critical_types"]


def _present(value: Any) -> bool:
    return value not in (None, "", [])


def completeness_score(document_type: str, fields: dict[str, Any]) -> float:
    """Share of the type's required fields that were extracted, 0-100."""
    required = get_confidence_rules().get("required_fields", {}).get(document_type, [])
    if not required:
        return 100.0
    found = sum(1 for name in required if _present(fields.get(name)))
    return round(100.0 * found / len(required), 1)


def consistency_issues(fields: dict[str, Any]) -> list[str]:
    """Cheap cross-field sanity checks on normalized values."""
    issues: list[str] = []

    etd = parse_date_value(fields.get("etd"))
    eta = parse_date_value(fields.get("eta"))
    if etd and eta and etd > eta:
        issues.append("etd_after_eta")

    booking = fields.get("booking_number")
    if _present(booking) and not 5 <= len(str(booking)) <= 25:
        issues.append("booking_number_length")

    bl = fields.get("bl_number")
    if _present(bl) and not 5 <= len(str(bl)) <= 30:
        issues.append("bl_number_length")

    containers = fields.get("container_number")
    if _present(containers):
        if isinstance(containers, str):
            containers = [containers]
        bad = [c for c in containers if not container_check_digit_ok(c)]
        if bad:
            issues.append("container_check_digit")
    return issues


def consistency_score(fields: dict[str, Any]) -> float:
    issues = consistency_issues(fields)
    return float(max(CONSISTENCY_FLOOR, 100 - CONSISTENCY_PENALTY * len(issues)))


def objective_confidence(document_type: str, confidence: float, fields: dict[str, Any]) -> float:
    """Blend the model's self-reported score with completeness and consistency."""
    weights = get_confidence_rules().get(
        "signal_weights", {"model": 0.6, "completeness": 0.25, "consistency": 0.15}
    )
    total = sum(weights.values()) or 1.0
    blended = (
        weights.get("model", 0) * float(confidence)
        + weights.get("completeness", 0) * completeness_score(document_type, fields)
        + weights.get("consistency", 0) * consistency_score(fields)
    ) / total
    return round(blended, 1)


def _thresholds_for(document_type: str) -> dict:
    rules = get_confidence_rules()
    return rules.get("type_thresholds", {}).get(document_type, rules["default_thresholds"])


def recommend_action(
    document_type: str | None,
    confidence: float,
    extracted_fields: dict[str, Any] | None = None,
) -> str:
    """Decide accept / flag_review / escalate_sonnet / escalate_opus."""
    rules = get_confidence_rules()
    doc_type = document_type or "unknown"
    score = float(confidence or 0)
    if extracted_fields is not None:
        score = objective_confidence(doc_type, score, extracted_fields)

    if is_communication_type(doc_type):
        action = ACCEPT if score >= rules.get("communication_accept_threshold", 85) else FLAG_REVIEW
    elif is_critical_type(doc_type):
        bands = rules["critical_bands"]
        if score >= bands["accept"]:
            action = ACCEPT
        elif score >= bands["escalate_sonnet"]:
            action = ESCALATE_SONNET
        else:
            action = ESCALATE_OPUS
    else:
        t = _thresholds_for(doc_type)
        if score >= t["accept"]:
            action = ACCEPT
        elif score >= t["flag_review"]:
            action = FLAG_REVIEW
        else:
            action = ESCALATE_SONNET

    logger.debug("recommend_action({}, {:.1f}) → {}", doc_type, score, action)
    return action
