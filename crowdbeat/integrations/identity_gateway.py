"""
Identity service gateway.

The identity service owns users, their platform role and their reputation
score.  CrowdBeat only awards reputation (competition and lyrics prizes)
through this class; identity itself arrives as trusted request headers.

  - Service token from IDENTITY_SERVICE_TOKEN as a Bearer header
  - Retry: max 2 attempts after the first, backoff 0.5 s → 2 s
  - Timeout: IDENTITY_SERVICE_TIMEOUT (default 10 s)
  - Circuit breaker: ≥5 failures in 60 s → 30 s pause
  - Disabled (returns a not-ok result, no network) when
    IDENTITY_SERVICE_URL is unset, which is the case in testing

Testability: pass a mock `session` to IdentityGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import requests
from flask import current_app

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5
_CB_WINDOW_SECONDS = 60
_CB_OPEN_DURATION_SECONDS = 30

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [0.5, 2]

_DEFAULT_TIMEOUT = 10


class GatewayResult:
    """Structured return value from IdentityGateway calls.

    Attributes:
        ok:          True if the call succeeded (HTTP 2xx + no exception).
        status_code: HTTP status code (None if network-level failure or disabled).
        data:        Parsed JSON response body, else None.
        error:       Human-readable error message or None.
        duration_ms: Round-trip latency in milliseconds.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | list | None,
        error: str | None,
        duration_ms: int = 0,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


class IdentityGateway:
    """Identity service REST gateway (module-level singleton).

    Usage:
        from crowdbeat.integrations.identity_gateway import identity_gateway
        result = identity_gateway.award_reputation(user_id, 50, "Competition win")
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session: requests.Session | None = session
        self._failures: list[datetime] = []
        self._open_until: datetime | None = None

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _circuit_closed(self) -> bool:
        now = datetime.now(timezone.utc)
        if self._open_until and now < self._open_until:
            logger.warning("Identity circuit open until %s", self._open_until)
            return False

        window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
        self._failures = [f for f in self._failures if f >= window_start]
        if len(self._failures) >= _CB_FAILURE_THRESHOLD:
            self._open_until = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
            logger.error(
                "Identity circuit opened: %d failures in %ds window",
                len(self._failures), _CB_WINDOW_SECONDS,
            )
            return False
        return True

    def _record_failure(self) -> None:
        self._failures.append(datetime.now(timezone.utc))

    def _record_success(self) -> None:
        self._failures.clear()
        self._open_until = None

    # ── Core request dispatcher ───────────────────────────────────────────────

    @staticmethod
    def _settings() -> tuple[str, str, int]:
        cfg = current_app.config
        return (
            (cfg.get("IDENTITY_SERVICE_URL") or "").rstrip("/"),
            cfg.get("IDENTITY_SERVICE_TOKEN") or "",
            int(cfg.get("IDENTITY_SERVICE_TIMEOUT") or _DEFAULT_TIMEOUT),
        )

    def request(self, method: str, path: str, *, json_body: Any = None) -> GatewayResult:
        """Execute a request against the identity service with retries.

        Returns:
            GatewayResult — always returns (never raises). Callers check .ok.
        """
        base_url, token, timeout = self._settings()
        if not base_url:
            logger.info("Identity service not configured; skipping %s %s", method, path)
            return GatewayResult(False, None, None, "Identity service not configured")

        if not self._circuit_closed():
            return GatewayResult(
                False, None, None,
                "Circuit breaker is open — identity calls temporarily suspended",
            )

        url = f"{base_url}{path}"
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        last_error = "Unknown error"
        last_status: int | None = None
        for attempt in range(_RETRY_MAX + 1):
            try:
                t0 = time.perf_counter()
                resp = self.session.request(
                    method, url, headers=headers, json=json_body, timeout=timeout,
                )
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code

                if resp.ok:
                    self._record_success()
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return GatewayResult(True, resp.status_code, data, None, duration_ms)

                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                self._record_failure()
                logger.warning(
                    "Identity request failed attempt=%d/%d status=%d url=%s",
                    attempt + 1, _RETRY_MAX + 1, resp.status_code, url,
                )
                # 4xx other than 429 will not improve on retry
                if 400 <= resp.status_code < 500 and resp.status_code != 429:
                    break

            except requests.Timeout:
                last_error = f"Request timed out after {timeout}s"
                self._record_failure()
                logger.warning(
                    "Identity request timed out attempt=%d/%d url=%s",
                    attempt + 1, _RETRY_MAX + 1, url,
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                self._record_failure()
                logger.warning(
                    "Identity network error attempt=%d/%d url=%s error=%s",
                    attempt + 1, _RETRY_MAX + 1, url, last_error,
                )

            if attempt < _RETRY_MAX:
                time.sleep(_RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)])

        return GatewayResult(False, last_status, None, last_error)

    # ── Identity operations ───────────────────────────────────────────────────

    def award_reputation(self, user_id: str, points: int, reason: str) -> GatewayResult:
        """Add *points* to the user's reputation score."""
        result = self.request(
            "POST",
            f"/api/v1/users/{user_id}/reputation",
            json_body={"points": int(points), "reason": reason},
        )
        if result.ok:
            logger.info("Reputation awarded user=%s points=%s reason=%s", user_id, points, reason)
        return result


identity_gateway = IdentityGateway()
