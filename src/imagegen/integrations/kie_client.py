"""Async client for the KIE jobs API plus callback payload normalisation.

``create_task`` and ``get_task_status`` classify every failure into
``RetryableProviderError`` / ``ProviderTimeoutError`` /
``TerminalProviderError`` and run under the shared retry policy.  Timeouts
are only retried when the caller supplied an idempotency key, since a timed
out request may already have created a task on the provider side.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import httpx

from imagegen.config import settings
from imagegen.errors import (
    ProviderTimeoutError,
    RetryableProviderError,
    TerminalProviderError,
    ValidationError,
)
from imagegen.integrations.result_shapes import ResultAsset, extract_result_assets
from imagegen.services.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_IN_PROGRESS = "in_progress"

_SUCCESS_STATES = {"success", "succeeded", "completed"}
_FAILED_STATES = {"fail", "failed", "error"}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ProviderTaskStatus:
    """Parsed ``recordInfo`` answer for a single task."""

    task_id: str
    state: str
    result_assets: list[ResultAsset] = field(default_factory=list)
    result_json: Any = None
    consume_credits: int | None = None
    cost_time_ms: int | None = None
    fail_message: str | None = None


@dataclass
class ProviderOutcome:
    """Provider-agnostic view of what happened to a task."""

    task_id: str
    kind: str
    assets: list[ResultAsset] = field(default_factory=list)
    error: str | None = None
    consume_credits: int | None = None
    cost_time_ms: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in (OUTCOME_SUCCEEDED, OUTCOME_FAILED)


def normalize_state(state: str | None) -> str:
    """Map a raw provider state onto an outcome kind."""
    value = (state or "").strip().lower()
    if value in _SUCCESS_STATES:
        return OUTCOME_SUCCEEDED
    if value in _FAILED_STATES:
        return OUTCOME_FAILED
    return OUTCOME_IN_PROGRESS


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Callback normalisation
# ---------------------------------------------------------------------------

def parse_callback_payload(body: Mapping[str, Any]) -> ProviderOutcome:
    """Normalise a wrapped (``{code, data: {...}}``) or flat callback body.

    Raises ``ValidationError`` when no task id can be found.
    """
    if not isinstance(body, Mapping):
        raise ValidationError("Callback body must be a JSON object")

    data = body.get("data")
    inner: Mapping[str, Any] = data if isinstance(data, Mapping) else body

    task_id = inner.get("taskId") or body.get("taskId")
    if not task_id or not isinstance(task_id, str):
        raise ValidationError("Callback is missing taskId")

    if "state" in inner:
        kind = normalize_state(inner.get("state"))
    elif "success" in inner:
        kind = OUTCOME_SUCCEEDED if inner.get("success") else OUTCOME_FAILED
    elif isinstance(body.get("code"), int) and body["code"] != 200:
        kind = OUTCOME_FAILED
    else:
        kind = OUTCOME_IN_PROGRESS

    error = inner.get("failMsg") or inner.get("error")
    if kind == OUTCOME_FAILED and not error:
        error = body.get("msg") or "Task failed without error message"

    return ProviderOutcome(
        task_id=task_id,
        kind=kind,
        assets=extract_result_assets(inner) if kind == OUTCOME_SUCCEEDED else [],
        error=error if kind == OUTCOME_FAILED else None,
        consume_credits=_as_int(inner.get("consumeCredits")),
        cost_time_ms=_as_int(inner.get("costTime")),
    )


def outcome_from_status(status: ProviderTaskStatus) -> ProviderOutcome:
    kind = normalize_state(status.state)
    return ProviderOutcome(
        task_id=status.task_id,
        kind=kind,
        assets=list(status.result_assets) if kind == OUTCOME_SUCCEEDED else [],
        error=(status.fail_message or "Task failed without error message")
        if kind == OUTCOME_FAILED
        else None,
        consume_credits=status.consume_credits,
        cost_time_ms=status.cost_time_ms,
    )


# ---------------------------------------------------------------------------
# KieClient
# ---------------------------------------------------------------------------

class KieClient:
    """Async client for the KIE ``createTask`` / ``recordInfo`` endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        callback_url: str | None = None,
        *,
        model: str | None = None,
        edit_model: str | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.KIE_API_BASE_URL).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.KIE_API_TOKEN
        self.callback_url = callback_url if callback_url is not None else settings.KIE_CALLBACK_URL
        self.model = model or settings.KIE_MODEL
        self.edit_model = edit_model or settings.KIE_EDIT_MODEL
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.PROVIDER_TIMEOUT_SECONDS),
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_task(
        self,
        prompt: str,
        *,
        idempotency_key: str | None = None,
        image_urls: list[str] | None = None,
        model: str | None = None,
        aspect_ratio: str = "9:16",
    ) -> str:
        """Create a generation task and return the provider task id."""
        chosen_model = model or (self.edit_model if image_urls else self.model)
        task_input: dict[str, Any] = {
            "prompt": prompt,
            "output_format": "png",
            "image_size": aspect_ratio,
        }
        if image_urls:
            task_input["image_urls"] = list(image_urls)
        payload = {
            "model": chosen_model,
            "callBackUrl": self.callback_url,
            "input": task_input,
        }
        headers = self._headers()
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        async def _attempt() -> str:
            body = await self._send("POST", "/createTask", json=payload, headers=headers)
            task_id = (body.get("data") or {}).get("taskId")
            if not task_id:
                raise TerminalProviderError("KIE response did not include a taskId")
            return task_id

        task_id = await self._with_retry(
            _attempt, "create_task", allow_timeout_retry=bool(idempotency_key)
        )
        logger.info("KIE task created: %s (model=%s)", task_id, chosen_model)
        return task_id

    async def get_task_status(self, task_id: str) -> ProviderTaskStatus:
        """Query ``recordInfo`` for a task's current state."""

        async def _attempt() -> ProviderTaskStatus:
            body = await self._send(
                "GET", "/recordInfo", params={"taskId": task_id}, headers=self._headers()
            )
            return self._parse_status(task_id, body.get("data") or {})

        # Reads are side-effect free, so timeouts are always safe to retry.
        return await self._with_retry(_attempt, "get_task_status", allow_timeout_retry=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    async def _with_retry(
        self,
        attempt: Callable[[], Awaitable[T]],
        operation: str,
        *,
        allow_timeout_retry: bool,
    ) -> T:
        def _is_retryable(exc: BaseException) -> bool:
            if isinstance(exc, ProviderTimeoutError):
                return allow_timeout_retry
            return isinstance(exc, RetryableProviderError)

        def _on_retry(n: int, exc: BaseException, delay: float) -> None:
            logger.warning(
                "KIE %s retry %d/%d: %s (wait %.2fs)",
                operation, n, self.retry_policy.max_attempts, exc, delay,
            )

        return await retry_async(
            attempt, self.retry_policy, is_retryable=_is_retryable, on_retry=_on_retry
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"KIE request timed out: {method} {path}") from exc
        except httpx.ConnectError as exc:
            raise RetryableProviderError(f"Cannot connect to KIE at {self.base_url}") from exc
        except httpx.TransportError as exc:
            raise RetryableProviderError(f"KIE transport error: {exc}") from exc

        self._raise_for_status_code(response.status_code, response.text)

        try:
            body = response.json()
        except ValueError as exc:
            raise TerminalProviderError(
                f"KIE returned invalid JSON: {response.text[:200]}"
            ) from exc
        if not isinstance(body, dict):
            raise TerminalProviderError("KIE returned a non-object JSON body")

        code = body.get("code")
        if isinstance(code, int) and code != 200:
            message = body.get("msg") or body.get("message") or f"Unknown error (code: {code})"
            self._raise_for_status_code(code, message)
            raise TerminalProviderError(f"KIE API error: {message}")
        return body

    @staticmethod
    def _raise_for_status_code(status_code: int, detail: str) -> None:
        if status_code == 429 or status_code >= 500:
            raise RetryableProviderError(f"KIE request failed: {status_code} {detail[:200]}")
        if status_code >= 400:
            raise TerminalProviderError(f"KIE request failed: {status_code} {detail[:200]}")

    @staticmethod
    def _parse_status(task_id: str, data: Mapping[str, Any]) -> ProviderTaskStatus:
        result_json = data.get("resultJson")
        if isinstance(result_json, str) and result_json:
            try:
                result_json = json.loads(result_json)
            except ValueError:
                logger.warning("KIE task %s returned malformed resultJson", task_id)
        return ProviderTaskStatus(
            task_id=data.get("taskId") or task_id,
            state=str(data.get("state") or "waiting"),
            result_assets=extract_result_assets(data),
            result_json=result_json,
            consume_credits=_as_int(data.get("consumeCredits")),
            cost_time_ms=_as_int(data.get("costTime")),
            fail_message=data.get("failMsg") or data.get("failCode"),
        )
