from __future__ import annotations

import time
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import httpx


DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class ProbeOutcome:
    ok: bool
    status_code: int | None = None
    elapsed_ms: float | None = None
    error: str | None = None

    def describe(self) -> str:
        if self.error:
            return self.error
        if self.status_code is not None:
            return f"HTTP {self.status_code}"
        return "ok" if self.ok else "failed"


def safe_url(url: str) -> str:
    """
    Strip query and fragment so tokens in monitored URLs stay out of logs and alerts.
    """
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


class Prober:
    """Single-shot HTTP availability check. Holds no per-call state."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def probe(self, url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> ProbeOutcome:
        started = time.perf_counter()
        try:
            resp = await self.client.get(url, follow_redirects=True, timeout=timeout)
        except httpx.TimeoutException as e:
            return ProbeOutcome(
                ok=False,
                error=f"timeout: {type(e).__name__} after {timeout:g}s",
                elapsed_ms=_elapsed_ms(started),
            )
        except httpx.HTTPError as e:
            return ProbeOutcome(
                ok=False,
                error=f"http_error: {type(e).__name__}: {e}",
                elapsed_ms=_elapsed_ms(started),
            )

        ok = 200 <= resp.status_code < 300
        return ProbeOutcome(
            ok=ok,
            status_code=resp.status_code,
            elapsed_ms=_elapsed_ms(started),
            error=None if ok else f"HTTP {resp.status_code}",
        )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)
