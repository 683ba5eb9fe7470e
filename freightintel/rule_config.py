"""
rule_config.py — Versioned rule tables loader.

Loads the four JSON rule tables that drive the engine:
  - classification_patterns.json  carriers, sender domains, prioritized patterns
  - confidence_thresholds.json    escalation bands, required fields, signal weights
  - field_authority.json          per-field document type → authority level
  - workflow_states.json          canonical (document type, direction) → state table

Tables are cached in memory at import and can be reloaded via reload_rules().

Business Rules:
- Every file must carry a "version" key
- Regex patterns are compiled at load time so a bad pattern fails fast
- Missing or invalid file logs an error and raises RuleConfigError; the engine
  never runs on an empty table
- Carrier patterns are stored sorted by priority descending (ties keep file order)

Called by: services/classifier.py, services/confidence.py, services/authority.py,
           services/workflow.py, services/pipeline.py
Depends on: freightintel/rules/*.json
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger

from .config import settings
from .exceptions import RuleConfigError

RULE_FILES = {
    "classification": "classification_patterns.json",
    "confidence": "confidence_thresholds.json",
    "authority": "field_authority.json",
    "workflow": "workflow_states.json",
}

_REQUIRED_KEYS = {
    "classification": ("carriers", "generic_rules", "attachment_bearing_types", "reply_prefix_pattern"),
    "confidence": ("communication_types", "critical_types", "critical_bands", "default_thresholds"),
    "authority": ("fields", "default_level"),
    "workflow": ("phases", "states"),
}

_rules: dict[str, dict[str, Any]] = {}


def _load_from_file(path: Path, name: str) -> dict[str, Any]:
    """Read, parse and structurally check one rule table."""
    if not path.exists():
        logger.error(f"Rule table {name} not found at {path}")
        raise RuleConfigError(f"rule table not found: {path}")

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.error(f"Failed to parse rule table {path.name}: {exc}")
        raise RuleConfigError(f"invalid rule table {path.name}: {exc}") from exc

    if not isinstance(raw, dict) or "version" not in raw:
        logger.error(f"Rule table {path.name} has no version")
        raise RuleConfigError(f"rule table {path.name} has no version")

    missing = [k for k in _REQUIRED_KEYS[name] if k not in raw]
    if missing:
        logger.error(f"Rule table {path.name} missing keys: {missing}")
        raise RuleConfigError(f"rule table {path.name} missing keys: {', '.join(missing)}")
    return raw


def _compile_rule(rule: dict[str, Any], where: str) -> dict[str, Any]:
    """Attach compiled regexes to a classification rule."""
    try:
        compiled = {
            "subject_res": [re.compile(p, re.IGNORECASE) for p in rule.get("subject_patterns", [])],
            "attachment_res": [re.compile(p, re.IGNORECASE) for p in rule.get("attachment_patterns", [])],
            "content_res": [re.compile(p, re.IGNORECASE) for p in rule.get("attachment_content_patterns", [])],
        }
    except re.error as exc:
        logger.error(f"Bad regex in {where}: {exc}")
        raise RuleConfigError(f"bad regex in {where}: {exc}") from exc
    if not compiled["subject_res"]:
        raise RuleConfigError(f"rule in {where} has no subject_patterns")
    return {
        **rule,
        **compiled,
        "priority": int(rule.get("priority", 0)),
        "confidence": float(rule.get("confidence", 85)),
        "requires_pdf": bool(rule.get("requires_pdf", False)),
    }


def _prepare_classification(raw: dict[str, Any]) -> dict[str, Any]:
    carriers = []
    for carrier in raw["carriers"]:
        cid = carrier["carrier_id"]
        patterns = [_compile_rule(p, f"carrier {cid}") for p in carrier.get("patterns", [])]
        # sorted() is stable, so equal priorities keep file order
        patterns = sorted(patterns, key=lambda p: -p["priority"])
        carriers.append({
            **carrier,
            "sender_domains": [d.strip().lower() for d in carrier.get("sender_domains", [])],
            "patterns": patterns,
        })
    generic = sorted(
        (_compile_rule(r, "generic_rules") for r in raw["generic_rules"]),
        key=lambda r: -r["priority"],
    )
    try:
        reply_re = re.compile(raw["reply_prefix_pattern"], re.IGNORECASE)
    except re.error as exc:
        raise RuleConfigError(f"bad reply_prefix_pattern: {exc}") from exc
    return {
        **raw,
        "carriers": carriers,
        "generic_rules": generic,
        "reply_prefix_re": reply_re,
        "attachment_bearing_types": frozenset(raw["attachment_bearing_types"]),
        "document_types": frozenset(raw.get("document_types", [])),
        "document_type_aliases": {
            str(k).strip().lower(): v for k, v in raw.get("document_type_aliases", {}).items()
        },
    }


def _prepare_workflow(raw: dict[str, Any]) -> dict[str, Any]:
    phases = {p["key"] for p in raw["phases"]}
    states: dict[str, dict[str, Any]] = {}
    by_key: dict[tuple[str, str], dict[str, Any]] = {}
    for s in raw["states"]:
        if s["phase"] not in phases:
            raise RuleConfigError(f"workflow state {s['key']} has unknown phase {s['phase']}")
        state = {**s, "terminal": bool(s.get("terminal", False))}
        states[s["key"]] = state
        for doc_type in s.get("document_types", []):
            existing = by_key.get((doc_type, s["direction"]))
            # One canonical state per compound key: the highest order wins
            if existing is None or state["order"] > existing["order"]:
                by_key[(doc_type, s["direction"])] = state
    return {**raw, "states_by_key": states, "states_by_document": by_key}


def load_rules(rules_dir: Path | None = None) -> None:
    """Load (or reload) all rule tables into memory."""
    global _rules
    base = Path(rules_dir or settings.rules_dir)
    loaded = {name: _load_from_file(base / fname, name) for name, fname in RULE_FILES.items()}
    loaded["classification"] = _prepare_classification(loaded["classification"])
    loaded["workflow"] = _prepare_workflow(loaded["workflow"])
    _rules = loaded
    logger.info(
        "Rule tables loaded: {}",
        ", ".join(f"{name}={table['version']}" for name, table in _rules.items()),
    )


def reload_rules(rules_dir: Path | None = None) -> None:
    """Reload from disk. On failure the previous tables stay in memory."""
    previous = _rules
    try:
        load_rules(rules_dir)
    except RuleConfigError:
        _restore(previous)
        raise


def _restore(previous: dict[str, dict[str, Any]]) -> None:
    global _rules
    _rules = previous


def rule_versions() -> dict[str, str]:
    return {name: str(table["version"]) for name, table in _rules.items()}


def get_classification_rules() -> dict[str, Any]:
    return _rules["classification"]


def get_confidence_rules() -> dict[str, Any]:
    return _rules["confidence"]


def get_authority_rules() -> dict[str, Any]:
    return _rules["authority"]


def get_workflow_rules() -> dict[str, Any]:
    return _rules["workflow"]


# Auto-load on import
load_rules()
