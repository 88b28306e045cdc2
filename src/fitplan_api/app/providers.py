"""Provider clients: one uniform "prompt in, text out" contract per backend.

Each client applies its backend defaults, serializes the request into that
backend's wire schema, performs exactly one HTTP POST with a fixed timeout,
and maps backend-specific error shapes into ``ProviderError``. Retries live in
the orchestrator, never here.

Beginner terms:
- Bearer auth: credential sent as an ``Authorization: Bearer ...`` header.
- Query auth: credential embedded in the URL (Wenxin ``access_token``).
- Cancel event: a ``threading.Event`` the caller sets to abandon the call.
"""

from __future__ import annotations

import json
import logging
import threading
from http import client as http_client
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Protocol, TypeVar
from urllib import error, parse, request

from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    ConfigurationError,
    GenerationCancelledError,
    ProviderError,
    UnsupportedProviderError,
)
from .models import ProviderAccount

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_S = 60.0
DEFAULT_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.7
# How often a waiting caller re-checks its cancel event during an HTTP call.
_CANCEL_POLL_S = 0.05

T = TypeVar("T")


class ProviderConfig(BaseModel):
    """Immutable per-request provider settings. ``None`` means backend default."""

    model_config = ConfigDict(frozen=True)

    api_endpoint: str = ""
    api_key: str = Field(default="", repr=False)
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None

    @classmethod
    def from_account(cls, account: ProviderAccount) -> ProviderConfig:
        return cls(
            api_endpoint=account.api_endpoint,
            api_key=account.api_key,
            model=account.model,
            max_tokens=account.max_tokens,
            temperature=account.temperature,
        )


class ProviderClient(Protocol):
    """Uniform capability implemented once per text-generation backend."""

    name: str

    def generate(
        self,
        prompt: str,
        config: ProviderConfig,
        *,
        cancel_event: threading.Event | None = None,
    ) -> str: ...

    def verify_connectivity(
        self,
        config: ProviderConfig,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None: ...

    def validate_config(self, config: ProviderConfig) -> None: ...


class _HTTPProviderClient:
    name = ""
    display_name = ""
    default_model = ""
    test_prompt = "Hello, this is a test message."

    def __init__(self, *, timeout_s: float = REQUEST_TIMEOUT_S) -> None:
        self.timeout_s = timeout_s

    def generate(
        self,
        prompt: str,
        config: ProviderConfig,
        *,
        cancel_event: threading.Event | None = None,
    ) -> str:
        self.validate_config(config)
        url, headers, body = self._build_request(prompt, config)
        status, raw = _run_cancellable(
            lambda: _post_json(
                self.display_name, url, headers=headers, body=body, timeout_s=self.timeout_s
            ),
            cancel_event=cancel_event,
        )
        return self._parse_response(status, raw)

    def verify_connectivity(
        self,
        config: ProviderConfig,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.generate(self.test_prompt, config, cancel_event=cancel_event)

    def validate_config(self, config: ProviderConfig) -> None:
        """Reject settings that no request could succeed with; never touches the network."""
        if not config.api_key:
            raise ConfigurationError(f"{self.display_name} API key is required")

    def _build_request(
        self, prompt: str, config: ProviderConfig
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        raise NotImplementedError

    def _parse_response(self, status: int, raw: bytes) -> str:
        raise NotImplementedError

    def _error(self, message: str) -> ProviderError:
        return ProviderError(self.name, f"{self.display_name} API error: {message}")


class OpenAIClient(_HTTPProviderClient):
    name = "openai"
    display_name = "OpenAI"
    default_endpoint = "https://api.openai.com/v1"
    default_model = "gpt-3.5-turbo"

    def _build_request(
        self, prompt: str, config: ProviderConfig
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        endpoint = (config.api_endpoint or self.default_endpoint).rstrip("/")
        body = {
            "model": config.model or self.default_model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": config.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": _temperature(config),
        }
        return f"{endpoint}/chat/completions", _bearer_headers(config.api_key), body

    def _parse_response(self, status: int, raw: bytes) -> str:
        payload = _decode_json(self.display_name, raw, status=status)
        api_error = payload.get("error")
        if isinstance(api_error, dict) and api_error.get("message"):
            raise self._error(str(api_error["message"]))
        if not _is_success(status):
            raise self._error(f"status {status}")
        content = _chat_completion_content(payload)
        if content is None:
            raise ProviderError(self.name, "no response from OpenAI")
        return content


class WenxinClient(_HTTPProviderClient):
    name = "wenxin"
    display_name = "Wenxin"
    test_prompt = "你好，这是一条测试消息。"
    top_p = 0.8

    def validate_config(self, config: ProviderConfig) -> None:
        super().validate_config(config)
        if not config.api_endpoint.strip():
            raise ConfigurationError("Wenxin API endpoint is required")

    def _build_request(
        self, prompt: str, config: ProviderConfig
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        endpoint = config.api_endpoint.strip()
        separator = "&" if "?" in endpoint else "?"
        url = f"{endpoint}{separator}{parse.urlencode({'access_token': config.api_key})}"
        body = {
            "messages": [{"role": "user", "content": prompt}],
            "temperature": _temperature(config),
            "top_p": self.top_p,
        }
        return url, {"Content-Type": "application/json"}, body

    def _parse_response(self, status: int, raw: bytes) -> str:
        payload = _decode_json(self.display_name, raw, status=status)
        error_code = payload.get("error_code")
        if error_code:
            raise self._error(str(payload.get("error_msg") or f"code {error_code}"))
        if not _is_success(status):
            raise self._error(f"status {status}")
        result = payload.get("result")
        if not isinstance(result, str):
            raise ProviderError(self.name, "no result in Wenxin API response")
        return result


class TongyiClient(_HTTPProviderClient):
    """Alibaba Tongyi through its OpenAI-compatible endpoint."""

    name = "tongyi"
    display_name = "Tongyi"
    test_prompt = "你好，这是一条测试消息。"
    default_endpoint = "https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions"
    default_model = "qwen-turbo"

    def _build_request(
        self, prompt: str, config: ProviderConfig
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        body = {
            "model": config.model or self.default_model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": _temperature(config),
            "max_tokens": config.max_tokens or DEFAULT_MAX_TOKENS,
        }
        url = self.resolve_endpoint(config.api_endpoint)
        return url, _bearer_headers(config.api_key), body

    @classmethod
    def resolve_endpoint(cls, configured: str) -> str:
        endpoint = configured.strip()
        # Only the compatible-mode API speaks the OpenAI schema.
        if not endpoint or "compatible-mode" not in endpoint:
            return cls.default_endpoint
        if "/chat/completions" in endpoint:
            return endpoint
        endpoint = endpoint.rstrip("/")
        if endpoint.endswith("compatible-mode") or endpoint.endswith("compatible-mode/v1"):
            return f"{endpoint}/chat/completions"
        return f"{endpoint}/v1/chat/completions"

    def _parse_response(self, status: int, raw: bytes) -> str:
        if not raw:
            raise self._error(f"status {status}, empty body")
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            if not _is_success(status):
                body = raw.decode("utf-8", errors="replace")[:400]
                raise self._error(f"status {status}, body: {body}") from exc
            raise ProviderError(self.name, "Tongyi API returned non-JSON response") from exc
        if not isinstance(payload, dict):
            raise ProviderError(self.name, "Tongyi API returned an unexpected payload")

        api_error = payload.get("error")
        if isinstance(api_error, dict):
            raise self._error(
                f"{api_error.get('message', '')} "
                f"(type: {api_error.get('type', '')}, code: {api_error.get('code', '')})"
            )
        if not _is_success(status):
            raise self._error(f"status {status}, body: {raw.decode('utf-8', errors='replace')[:400]}")
        content = _chat_completion_content(payload)
        if content is None:
            raise ProviderError(self.name, "no choices in Tongyi API response")
        return content


PROVIDER_CLIENTS: dict[str, type[_HTTPProviderClient]] = {
    OpenAIClient.name: OpenAIClient,
    WenxinClient.name: WenxinClient,
    TongyiClient.name: TongyiClient,
}


def get_provider_client(provider: str, *, timeout_s: float = REQUEST_TIMEOUT_S) -> ProviderClient:
    """Select a client by provider name; unknown names fail before any network call."""
    client_cls = PROVIDER_CLIENTS.get(provider)
    if client_cls is None:
        raise UnsupportedProviderError(provider)
    return client_cls(timeout_s=timeout_s)


def supported_providers() -> list[str]:
    return sorted(PROVIDER_CLIENTS)


def _run_cancellable(fn: Callable[[], T], *, cancel_event: threading.Event | None) -> T:
    """Run ``fn`` on a helper thread, abandoning it as soon as ``cancel_event`` fires."""
    if cancel_event is None:
        return fn()
    if cancel_event.is_set():
        raise GenerationCancelledError()

    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="provider-call")
    try:
        future = pool.submit(fn)
        while True:
            done, _ = wait([future], timeout=_CANCEL_POLL_S)
            if done:
                return future.result()
            if cancel_event.is_set():
                # The socket timeout still bounds the abandoned thread.
                future.cancel()
                raise GenerationCancelledError("plan generation was cancelled during provider call")
    finally:
        pool.shutdown(wait=False)


def _post_json(
    provider: str,
    url: str,
    *,
    headers: dict[str, str],
    body: dict[str, Any],
    timeout_s: float,
) -> tuple[int, bytes]:
    """POST a JSON body and return ``(status, raw_body)`` for 2xx and HTTP errors alike."""
    req = request.Request(
        url=url,
        data=json.dumps(body).encode("utf-8"),
        method="POST",
        headers=headers,
    )
    logger.debug("provider_call event=start provider=%s timeout_s=%s", provider, timeout_s)
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            status = int(getattr(response, "status", 200))
            return status, response.read()
    except error.HTTPError as exc:
        return exc.code, exc.read() or b""
    except error.URLError as exc:
        raise ProviderError(provider.lower(), f"{provider} request failed: {exc.reason}") from exc
    except http_client.HTTPException as exc:
        # Truncated or garbled HTTP responses (e.g. IncompleteRead).
        raise ProviderError(
            provider.lower(), f"{provider} returned an incomplete response: {exc}"
        ) from exc
    except TimeoutError as exc:
        raise ProviderError(
            provider.lower(), f"{provider} request timed out after {timeout_s:.0f}s"
        ) from exc
    except OSError as exc:
        raise ProviderError(provider.lower(), f"{provider} request failed: {exc}") from exc


def _decode_json(provider: str, raw: bytes, *, status: int) -> dict[str, Any]:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        if not _is_success(status):
            raise ProviderError(provider.lower(), f"{provider} API error: status {status}") from exc
        raise ProviderError(provider.lower(), f"{provider} returned non-JSON response") from exc
    if not isinstance(payload, dict):
        raise ProviderError(provider.lower(), f"{provider} returned an unexpected payload")
    return payload


def _chat_completion_content(payload: dict[str, Any]) -> str | None:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "".join(parts)
    return None


def _bearer_headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def _temperature(config: ProviderConfig) -> float:
    if config.temperature is None:
        return DEFAULT_TEMPERATURE
    return config.temperature


def _is_success(status: int) -> bool:
    return 200 <= status < 300
