"""Completion service: the black-box LLM seam of the reconciler.

Every call carries a stable operation tag ("extract-gap-analysis",
"generate-share-offer", "generate-reconciler-summary") so deterministic
test doubles can dispatch canned replies per tag. The production
implementation talks to the Anthropic Messages API through httpx and is
protected by a timeout and a consecutive-failure circuit breaker.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Callable, Protocol

import httpx

from mwf.config import Settings

logger = logging.getLogger(__name__)

GAP_ANALYSIS_TAG = "extract-gap-analysis"
SHARE_OFFER_TAG = "generate-share-offer"
SUMMARY_TAG = "generate-reconciler-summary"

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class CompletionError(Exception):
    """The completion service failed to produce a usable structured result."""


class CompletionTimeout(CompletionError):
    """The completion call exceeded its time budget."""


class CircuitOpenError(CompletionError):
    """The circuit breaker is open; the call was not attempted."""


class CompletionService(Protocol):
    async def complete(self, payload: dict[str, Any], operation_tag: str) -> dict[str, Any]: ...


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    Opens after ``failure_threshold`` consecutive failures and rejects
    calls for ``reset_seconds``. After that a single trial call is let
    through (half-open); success closes the circuit, failure re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at >= self.reset_seconds:
            return "half_open"
        return "open"

    def before_call(self) -> None:
        if self.state == "open":
            raise CircuitOpenError("completion circuit is open")

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Completion circuit closed")
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        trial_failed = self.state == "half_open"
        if trial_failed or (self._opened_at is None and self._failures >= self.failure_threshold):
            logger.warning(
                "Completion circuit opened after %d consecutive failures", self._failures
            )
            self._opened_at = self._clock()


def build_anthropic_headers(settings: Settings) -> dict[str, str]:
    """Build auth headers for Anthropic API calls."""
    headers: dict[str, str] = {"anthropic-version": "2023-06-01"}
    api_key = settings.anthropic_auth_token or settings.anthropic_api_key
    if api_key and "sk-ant-oat" in api_key:
        headers["Authorization"] = f"Bearer {api_key}"
        headers["anthropic-beta"] = "oauth-2025-04-20"
    else:
        headers["x-api-key"] = api_key or ""
    return headers


def extract_json(text: str) -> dict[str, Any]:
    """Parse the first JSON object in an LLM reply.

    Tolerates markdown fences and prose around the object.
    Raises CompletionError if no object can be decoded.
    """
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            raise CompletionError("no JSON object in completion reply") from None
        try:
            value = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as e:
            raise CompletionError(f"invalid JSON in completion reply: {e}") from e
    if not isinstance(value, dict):
        raise CompletionError("completion reply is not a JSON object")
    return value


async def guarded_complete(
    completion: CompletionService,
    payload: dict[str, Any],
    operation_tag: str,
    timeout: float,
) -> dict[str, Any]:
    """Call the completion service with a hard timeout.

    Every failure mode is normalized into CompletionError so callers
    only have one exception type to convert into their fallback.
    """
    try:
        return await asyncio.wait_for(completion.complete(payload, operation_tag), timeout=timeout)
    except asyncio.TimeoutError:
        raise CompletionTimeout(f"{operation_tag} timed out after {timeout:.1f}s") from None
    except asyncio.CancelledError:
        raise
    except CompletionError:
        raise
    except Exception as e:
        raise CompletionError(f"{operation_tag} failed: {type(e).__name__}: {e}") from e


class AnthropicCompletionService:
    """Completion service backed by the Anthropic Messages API.

    Payload keys: ``system`` (optional), ``prompt`` and ``max_tokens``.
    The reply text is parsed as a JSON object.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = settings
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.completion_timeout, connect=10.0)
        )
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            reset_seconds=settings.circuit_reset_seconds,
        )

    async def complete(self, payload: dict[str, Any], operation_tag: str) -> dict[str, Any]:
        self.breaker.before_call()
        try:
            result = await self._call(payload, operation_tag)
        except (CompletionError, httpx.HTTPError) as e:
            self.breaker.record_failure()
            if isinstance(e, CompletionError):
                raise
            raise CompletionError(f"{operation_tag}: {type(e).__name__}: {e}") from e
        except asyncio.CancelledError:
            # wait_for() timeout lands here; count it against the circuit
            self.breaker.record_failure()
            raise
        self.breaker.record_success()
        return result

    async def _call(self, payload: dict[str, Any], operation_tag: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": payload.get("max_tokens", 1024),
            "messages": [{"role": "user", "content": payload["prompt"]}],
            "metadata": {"user_id": f"mwf:{operation_tag}"},
        }
        if payload.get("system"):
            body["system"] = payload["system"]

        started = time.monotonic()
        response = await self._http.post(
            f"{self._settings.api_base_url}/v1/messages",
            json=body,
            headers=build_anthropic_headers(self._settings),
        )
        if response.status_code != 200:
            raise CompletionError(f"{operation_tag}: HTTP {response.status_code}")

        data = response.json()
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        logger.debug(
            "Completion %s finished in %.2fs (%d chars)",
            operation_tag,
            time.monotonic() - started,
            len(text),
        )
        return extract_json(text)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
