"""Outbound SMS provider client with timeout, retry/backoff and error classification."""

import asyncio
from time import perf_counter
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel

from smsflow.common.errors import PermanentProviderError, ProviderError, TransientProviderError
from smsflow.common.logging import logger, trace_id_ctx
from smsflow.common.metrics import PipelineMetrics

PERMANENT_MARKERS = ("invalid", "blocked", "forbidden", "unsubscribed")
TRANSIENT_MARKERS = ("rate limit", "temporary", "timeout", "unavailable")


class ProviderResponse(BaseModel):
    provider_message_id: str
    status: str = "sent"


def classify_response(status_code: int, body: str) -> ProviderError:
    """Map a non-2xx provider response to a typed error."""

    message = f"HTTP {status_code}: {body[:200]}"
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(message, status_code=status_code)
    if 400 <= status_code < 500:
        return PermanentProviderError(message, status_code=status_code)
    return TransientProviderError(message, status_code=status_code)


def classify_provider_message(text: str) -> ProviderError:
    """Map an error reported inside a 2xx provider body."""

    lowered = text.lower()
    message = f"Provider error: {text}"
    if any(marker in lowered for marker in PERMANENT_MARKERS):
        return PermanentProviderError(message, error_code="provider_rejected")
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientProviderError(message, error_code="provider_unavailable")
    # Unknown provider errors are retried rather than dropped.
    return TransientProviderError(message, error_code="provider_error")


def classify_exception(exc: Exception, attempts: int = 1) -> ProviderError:
    """Map transport-level failures; anything unrecognized is transient.

    Always returns a new error stamped with `attempts`; `exc` is left untouched.
    """

    if isinstance(exc, ProviderError):
        return type(exc)(exc.message, status_code=exc.status_code, error_code=exc.error_code, attempts=attempts)
    if isinstance(exc, httpx.TimeoutException):
        return TransientProviderError(f"timeout: {exc}", error_code="provider_timeout", attempts=attempts)
    if isinstance(exc, httpx.TransportError):
        return TransientProviderError(f"network error: {exc}", error_code="network_error", attempts=attempts)
    return TransientProviderError(str(exc) or exc.__class__.__name__, attempts=attempts)


class ProviderClient:
    """`send(to, text, meta, callback_url)` against `POST {api_url}/send`.

    Transient failures are retried locally up to `max_retries` attempts with
    `retry_delays` between them. The final error keeps its classification so
    the caller can tell "retry later" from "give up".
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        name: str = "mitto",
        timeout_ms: int = 10000,
        max_retries: int = 3,
        retry_delays: tuple[float, ...] = (0.1, 0.5, 2.0),
        metrics: PipelineMetrics | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.name = name
        self.max_retries = max(1, max_retries)
        self.retry_delays = retry_delays
        self.metrics = metrics or PipelineMetrics()
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=timeout_ms / 1000.0,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    @classmethod
    def from_settings(cls, settings, metrics: PipelineMetrics | None = None, transport=None) -> "ProviderClient":
        return cls(
            api_url=settings.provider_api_url,
            api_key=settings.provider_api_key,
            name=settings.provider_name,
            timeout_ms=settings.provider_timeout_ms,
            max_retries=settings.provider_max_retries,
            metrics=metrics,
            transport=transport,
        )

    async def send(
        self,
        to: str,
        text: str,
        meta: dict[str, Any] | None = None,
        callback_url: str | None = None,
    ) -> ProviderResponse:
        payload: dict[str, Any] = {"to": to, "text": text}
        if meta:
            payload["meta"] = meta
        if callback_url:
            payload["callback_url"] = callback_url

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._send_once(payload)
                logger.info(
                    "sms_sent provider=%s provider_message_id=%s attempt=%s",
                    self.name,
                    response.provider_message_id,
                    attempt,
                )
                return response
            except Exception as exc:
                error = classify_exception(exc, attempts=attempt)
                if error.is_transient and attempt < self.max_retries:
                    delay = self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]
                    self.metrics.retries_total.labels(dependency="provider").inc()
                    logger.warning(
                        "provider transient error attempt=%s/%s backoff_s=%s error=%s",
                        attempt,
                        self.max_retries,
                        delay,
                        error.message,
                    )
                    await self._sleep(delay)
                    continue
                self.metrics.sms_send_errors_total.labels(classification=error.classification.value).inc()
                logger.error(
                    "provider send failed attempt=%s classification=%s status_code=%s error=%s",
                    attempt,
                    error.classification.value,
                    error.status_code,
                    error.message,
                )
                raise error from exc
        raise TransientProviderError("provider retries exhausted")

    async def _send_once(self, payload: dict[str, Any]) -> ProviderResponse:
        start = perf_counter()
        try:
            resp = await self._client.post(
                f"{self.api_url}/send",
                json=payload,
                headers={"X-Request-ID": trace_id_ctx.get()},
            )
        finally:
            self.metrics.provider_latency_seconds.observe(max(0.0, perf_counter() - start))
        if resp.status_code >= 400:
            raise classify_response(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientProviderError(f"unparseable provider response: {resp.text[:200]}") from exc
        if data.get("error"):
            raise classify_provider_message(str(data["error"]))
        provider_message_id = data.get("id") or data.get("message_id")
        if not provider_message_id:
            raise TransientProviderError("provider response missing message id")
        return ProviderResponse(provider_message_id=str(provider_message_id), status=data.get("status") or "sent")

    async def aclose(self) -> None:
        await self._client.aclose()
