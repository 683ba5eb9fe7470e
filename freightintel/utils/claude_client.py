"""Claude API client — Structured Outputs, prompt caching, model routing.

Three model tiers, matching the escalation ladder:
  - FAST:   claude-haiku-4-5 for first-pass classification and extraction
  - SMART:  claude-sonnet-4-5 for escalate_sonnet re-extraction
  - STRONG: claude-opus-4-1 for escalate_opus re-extraction

Every call returns a result or None; failures are logged, never raised.
Calls are spaced by settings.llm_min_interval_seconds across the process
and retried with exponential backoff on 429/5xx.

Usage:
    from freightintel.utils.claude_client import claude_structured
    result = await claude_structured(
        prompt="Classify this email...",
        schema=CLASSIFICATION_SCHEMA,
        system="You classify freight forwarding emails.",
        model_tier="fast",
    )
"""

import asyncio
import json
import time
from typing import Any

from loguru import logger

from freightintel.config import settings
from freightintel.http_client import http

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"

MODELS = {
    "fast": "claude-haiku-4-5-20251001",
    "smart": "claude-sonnet-4-5-20250929",
    "strong": "claude-opus-4-1-20250805",
}

RETRYABLE_STATUSES = {429, 500, 502, 503, 504, 529}

_throttle_lock = asyncio.Lock()
_last_call_at = 0.0


async def _throttle() -> None:
    """Enforce the minimum spacing between consecutive API calls."""
    global _last_call_at
    async with _throttle_lock:
        wait = settings.llm_min_interval_seconds - (time.monotonic() - _last_call_at)
        if wait > 0:
            await asyncio.sleep(wait)
        _last_call_at = time.monotonic()


def _headers(*, cache: bool = False) -> dict:
    """Build API headers. Enable prompt caching when static prompts are reused."""
    h = {
        "x-api-key": settings.anthropic_api_key,
        "anthropic-version": API_VERSION,
        "content-type": "application/json",
    }
    if cache:
        h["anthropic-beta"] = "prompt-caching-2024-07-31"
    return h


async def _post(body: dict, *, cache: bool, timeout: int) -> dict | None:
    """POST to the Messages API with retries. Returns the response JSON or None."""
    retries = max(1, settings.llm_max_retries)
    for attempt in range(retries):
        await _throttle()
        try:
            start = time.monotonic()
            resp = await http.post(
                API_URL,
                headers=_headers(cache=cache),
                json=body,
                timeout=timeout,
            )
            elapsed = time.monotonic() - start
        except Exception as e:
            if attempt < retries - 1:
                delay = settings.llm_base_delay_seconds * (2 ** attempt)
                logger.warning(
                    "Claude call failed (attempt {}/{}), retry in {:.1f}s: {}",
                    attempt + 1, retries, delay, e,
                )
                await asyncio.sleep(delay)
                continue
            logger.warning("Claude call failed after {} attempts: {}", retries, e)
            return None

        if resp.status_code == 200:
            data = resp.json()
            usage = data.get("usage", {})
            logger.info(
                "Claude OK | model={} | in={} | out={} | {:.1f}s",
                body.get("model"),
                usage.get("input_tokens", "?"),
                usage.get("output_tokens", "?"),
                elapsed,
            )
            return data

        if resp.status_code in RETRYABLE_STATUSES and attempt < retries - 1:
            delay = settings.llm_base_delay_seconds * (2 ** attempt)
            logger.warning(
                "Claude {} (attempt {}/{}), retry in {:.1f}s: {}",
                resp.status_code, attempt + 1, retries, delay, resp.text[:200],
            )
            await asyncio.sleep(delay)
            continue

        logger.warning("Claude API {}: {}", resp.status_code, resp.text[:200])
        return None

    return None


def _system_blocks(system: str, cache_system: bool) -> list[dict]:
    if not system:
        return []
    block = {"type": "text", "text": system}
    if cache_system:
        block["cache_control"] = {"type": "ephemeral"}
    return [block]


async def claude_structured(
    prompt: str,
    schema: dict,
    *,
    system: str = "",
    model_tier: str = "fast",
    max_tokens: int = 1024,
    cache_system: bool = True,
    timeout: int | None = None,
) -> dict | None:
    """Call Claude with guaranteed-valid JSON output (tool-forced Structured Outputs).

    Args:
        prompt: User message content
        schema: JSON Schema that the model MUST conform to
        system: System prompt (cached if cache_system=True)
        model_tier: "fast", "smart" or "strong"
        max_tokens: Max output tokens
        cache_system: Whether to mark the system prompt as cacheable
        timeout: Request timeout seconds (defaults to settings)

    Returns:
        Tool input dict conforming to schema, or None on failure
    """
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set — skipping Claude call")
        return None

    body: dict[str, Any] = {
        "model": MODELS.get(model_tier, MODELS["fast"]),
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": prompt}],
        "tools": [
            {
                "name": "structured_output",
                "description": "Return structured data matching the required schema.",
                "input_schema": schema,
            }
        ],
        "tool_choice": {"type": "tool", "name": "structured_output"},
    }
    blocks = _system_blocks(system, cache_system)
    if blocks:
        body["system"] = blocks

    data = await _post(
        body, cache=cache_system, timeout=timeout or settings.llm_timeout_seconds
    )
    if data is None:
        return None

    for block in data.get("content", []):
        if block.get("type") == "tool_use" and block.get("name") == "structured_output":
            payload = block.get("input")
            # Some responses nest JSON as a string; unwrap it
            if isinstance(payload, str):
                return safe_json_parse(payload)
            return payload

    logger.warning("Claude structured output: no tool_use block in response")
    return None


def safe_json_parse(text: str) -> dict | list | None:
    """Parse JSON from text that may contain markdown fences or preamble."""
    if not text:
        return None

    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = [line for line in cleaned.split("\n") if not line.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    for start_char, end_char in [("{", "}"), ("[", "]")]:
        start = cleaned.find(start_char)
        end = cleaned.rfind(end_char)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except json.JSONDecodeError:
                continue

    logger.debug(f"JSON parse failed: {text[:100]}...")
    return None
