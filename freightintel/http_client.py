"""Shared HTTP client — connection pooling for all oracle requests.

One module-level httpx.AsyncClient singleton with a 60s default timeout.
Per-request timeout overrides via http.post(url, timeout=15).

Usage:
    from freightintel.http_client import http
    resp = await http.post(url, json=payload, timeout=30)
"""

import httpx

_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=30,
)

http = httpx.AsyncClient(
    timeout=60,
    limits=_LIMITS,
    follow_redirects=False,
)


async def close_clients():
    """Shut down the shared client. Call once at the end of a batch run."""
    try:
        await http.aclose()
    except RuntimeError:
        pass
