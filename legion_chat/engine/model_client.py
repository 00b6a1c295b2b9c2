"""OpenAI-compatible chat completions client (hardened, with streaming + tools)."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .. import config
from ..utils.redact import redact_secrets
from .errors import ModelProviderError, parse_retry_after
from .tool_calls import ToolCall, ToolCallDelta, parse_tool_arguments

logger = logging.getLogger(__name__)


@dataclass
class ModelResponse:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[dict[str, Any]] = None


@dataclass
class ModelDelta:
    content: Optional[str] = None
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: Optional[str] = None


_SEMAPHORE = asyncio.Semaphore(max(1, config.MODEL_MAX_CONCURRENCY))
_CLIENT: httpx.AsyncClient | None = None
_AUTH_INVALID_UNTIL: float = 0.0


def set_client(client: httpx.AsyncClient | None) -> None:
    global _CLIENT
    _CLIENT = client


def _get_client(timeout_seconds: float) -> httpx.AsyncClient:
    global _CLIENT
    if _CLIENT is not None:
        return _CLIENT
    logger.warning("Model httpx client not set via lifespan; creating a fallback client.")
    _CLIENT = httpx.AsyncClient(timeout=timeout_seconds)
    return _CLIENT


def _should_retry(status_code: Optional[int]) -> bool:
    if status_code is None:
        return True
    if status_code == 429:
        return True
    if 500 <= status_code <= 599:
        return True
    return False


async def _backoff(http_attempt: int) -> None:
    base = config.MODEL_RETRY_BASE_SECONDS * (2**http_attempt)
    await asyncio.sleep(base + random.random() * base)


def _check_auth_cooldown() -> None:
    if time.time() < _AUTH_INVALID_UNTIL:
        raise ModelProviderError(401, "Model credentials invalid (cooldown)")


def _mark_auth_invalid() -> None:
    global _AUTH_INVALID_UNTIL
    _AUTH_INVALID_UNTIL = time.time() + max(1, int(config.MODEL_AUTH_COOLDOWN_SECONDS))


def _http_error(status_code: int, body: str, headers: httpx.Headers) -> ModelProviderError:
    if status_code in (401, 403):
        return ModelProviderError(401, f"Model auth error ({status_code})")
    return ModelProviderError(
        status_code,
        f"Model HTTP {status_code}: {redact_secrets(body[:500])}",
        retry_after=parse_retry_after(headers.get("retry-after")),
    )


def _parse_complete_tool_calls(raw_calls: Any) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for i, raw in enumerate(raw_calls or []):
        function = raw.get("function") or {}
        arguments_text = function.get("arguments") or ""
        arguments, error = parse_tool_arguments(arguments_text)
        calls.append(
            ToolCall(
                id=raw.get("id") or f"call_{i}",
                name=function.get("name") or "",
                arguments=arguments,
                arguments_text=arguments_text,
                arguments_error=error,
            )
        )
    return calls


def parse_stream_line(line: str) -> Optional[dict[str, Any]]:
    """Decode one `data:` line of an upstream completion stream.

    Returns None for keep-alives, comments, non-data fields, undecodable payloads
    and the terminal `[DONE]` marker (callers detect that with `is_done_line`).
    """
    if not line.startswith("data:"):
        return None
    data_str = line[5:].strip()
    if not data_str or data_str == "[DONE]":
        return None
    try:
        payload = json.loads(data_str)
    except json.JSONDecodeError:
        logger.debug("model_stream_undecodable_line line=%s", data_str[:200])
        return None
    return payload if isinstance(payload, dict) else None


def is_done_line(line: str) -> bool:
    return line.startswith("data:") and line[5:].strip() == "[DONE]"


def delta_from_payload(payload: dict[str, Any]) -> Optional[ModelDelta]:
    if isinstance(payload.get("error"), dict):
        err = payload["error"]
        code = err.get("code")
        status_code = code if isinstance(code, int) else None
        raise ModelProviderError(status_code, f"Model stream error: {redact_secrets(str(err.get('message', '')))}")

    choices = payload.get("choices") or []
    if not choices:
        return None
    choice = choices[0] or {}
    delta = choice.get("delta") or {}
    tool_deltas = []
    for raw in delta.get("tool_calls") or []:
        parsed = ToolCallDelta.from_openai(raw)
        if parsed is not None:
            tool_deltas.append(parsed)
    return ModelDelta(
        content=delta.get("content") or None,
        tool_calls=tool_deltas,
        finish_reason=choice.get("finish_reason") or None,
    )


class ModelClient:
    """Talks to one OpenAI-compatible model; shares the process-wide httpx client."""

    def __init__(
        self,
        *,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.model = model or config.MODEL_NAME
        self._api_key = api_key if api_key is not None else config.MODEL_API_KEY
        self._api_url = api_url or config.MODEL_API_URL
        self._timeout = timeout_seconds if timeout_seconds is not None else config.MODEL_TIMEOUT_SECONDS

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]], *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model, "messages": messages}
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream"] = True
        return payload

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ModelResponse:
        _check_auth_cooldown()
        client = _get_client(self._timeout)
        payload = self._payload(messages, tools, stream=False)

        async with _SEMAPHORE:
            last_error: Optional[ModelProviderError] = None
            for http_attempt in range(config.MODEL_MAX_RETRIES + 1):
                start = time.monotonic()
                try:
                    resp = await client.post(
                        self._api_url,
                        headers=self._headers(),
                        json=payload,
                        timeout=self._timeout,
                    )
                except httpx.HTTPError as e:
                    last_error = ModelProviderError(None, redact_secrets(f"Error querying model {self.model}: {e}"))
                    logger.warning("model_request_failed attempt=%s error=%s", http_attempt, last_error.message)
                    if http_attempt < config.MODEL_MAX_RETRIES:
                        await _backoff(http_attempt)
                        continue
                    raise last_error from e

                latency_ms = int((time.monotonic() - start) * 1000)
                if resp.status_code >= 400:
                    last_error = _http_error(resp.status_code, resp.text, resp.headers)
                    if last_error.status_code == 401:
                        _mark_auth_invalid()
                        raise last_error
                    if http_attempt < config.MODEL_MAX_RETRIES and _should_retry(resp.status_code):
                        await _backoff(http_attempt)
                        continue
                    raise last_error

                data = resp.json()
                choice = (data.get("choices") or [{}])[0] or {}
                message = choice.get("message") or {}
                usage = data.get("usage") if isinstance(data.get("usage"), dict) else None
                logger.info("model_complete model=%s latency_ms=%s", self.model, latency_ms)
                return ModelResponse(
                    content=message.get("content") or "",
                    tool_calls=_parse_complete_tool_calls(message.get("tool_calls")),
                    finish_reason=choice.get("finish_reason"),
                    usage=usage,
                )

            raise last_error or ModelProviderError(None, "Unknown model error")

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[ModelDelta]:
        """Yield content/tool-call deltas; the iterator ends when the model ends its turn.

        Retries only happen before the response body has started.
        """
        _check_auth_cooldown()
        client = _get_client(self._timeout)
        payload = self._payload(messages, tools, stream=True)

        async with _SEMAPHORE:
            started = False
            for http_attempt in range(config.MODEL_MAX_RETRIES + 1):
                try:
                    async with client.stream(
                        "POST",
                        self._api_url,
                        headers=self._headers(),
                        json=payload,
                        timeout=self._timeout,
                    ) as resp:
                        if resp.status_code >= 400:
                            body = (await resp.aread()).decode("utf-8", errors="replace")
                            error = _http_error(resp.status_code, body, resp.headers)
                            if error.status_code == 401:
                                _mark_auth_invalid()
                                raise error
                            if http_attempt < config.MODEL_MAX_RETRIES and _should_retry(resp.status_code):
                                logger.warning("model_stream_retry attempt=%s status=%s", http_attempt, resp.status_code)
                                await _backoff(http_attempt)
                                continue
                            raise error

                        async for line in resp.aiter_lines():
                            if is_done_line(line):
                                break
                            payload_obj = parse_stream_line(line)
                            if payload_obj is None:
                                continue
                            delta = delta_from_payload(payload_obj)
                            if delta is not None:
                                started = True
                                yield delta
                        return
                except httpx.HTTPError as e:
                    error = ModelProviderError(None, redact_secrets(f"Error streaming model {self.model}: {e}"))
                    logger.warning("model_stream_failed attempt=%s error=%s", http_attempt, error.message)
                    if not started and http_attempt < config.MODEL_MAX_RETRIES:
                        await _backoff(http_attempt)
                        continue
                    raise error from e
