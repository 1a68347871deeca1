from __future__ import annotations

import json
import os
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any

import requests

from concierge.errors import ApiError


def _upstream_error(code: str, message: str) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="transient",
        retryable=True,
        http_status=503,
    )


class HttpMessagingGateway:
    """Sends outbound chat messages through the messaging provider's HTTP API."""

    def __init__(self, *, base_url: str, token: str = "", timeout_s: float = 10.0) -> None:
        if not base_url.strip():
            raise ValueError("MESSAGING_GATEWAY_URL must be provided for the http messaging gateway")
        self._base_url = base_url.strip().rstrip("/")
        self._token = token.strip()
        self._timeout_s = max(0.1, float(timeout_s))

    def send(self, *, to: str, body: str, trace_id: str | None = None) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if trace_id:
            headers["x-trace-id"] = trace_id
        try:
            response = requests.post(
                f"{self._base_url}/messages",
                json={"to": to, "body": body},
                headers=headers,
                timeout=self._timeout_s,
            )
        except requests.exceptions.Timeout as exc:
            raise _upstream_error("MESSAGING_TIMEOUT", f"messaging gateway timed out: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise _upstream_error("MESSAGING_UNAVAILABLE", f"messaging gateway failed: {exc}") from exc
        if response.status_code >= 400:
            raise _upstream_error(
                "MESSAGING_UPSTREAM_ERROR",
                f"messaging gateway returned {response.status_code}: {response.text[:200]}",
            )
        try:
            data = response.json()
        except ValueError:
            data = {}
        return {
            "message_id": str(data.get("message_id") or data.get("id") or ""),
            "status_code": response.status_code,
        }


class MockMessagingGateway:
    """In-process gateway that records sends; `fail_times` makes the first sends raise."""

    def __init__(self, *, fail_times: int = 0) -> None:
        self._lock = threading.Lock()
        self.sent: list[dict[str, Any]] = []
        self._fail_remaining = max(0, int(fail_times))

    def send(self, *, to: str, body: str, trace_id: str | None = None) -> dict[str, Any]:
        with self._lock:
            if self._fail_remaining > 0:
                self._fail_remaining -= 1
                raise _upstream_error("MESSAGING_UNAVAILABLE", "mock messaging gateway failure")
            message_id = f"mock_msg_{len(self.sent) + 1}"
            self.sent.append({"message_id": message_id, "to": to, "body": body, "trace_id": trace_id})
            return {"message_id": message_id, "status_code": 200}


def _import_openai() -> Any:
    try:
        import openai
    except ImportError as exc:
        raise RuntimeError("openai package is required for CONCIERGE_GATEWAY_MODE=live; install openai>=1") from exc
    return openai


class OpenAICompletionClient:
    """Generative completion service behind the OpenAI chat completions API."""

    def __init__(self, *, api_key: str, model: str, base_url: str = "", temperature: float = 0.1) -> None:
        openai = _import_openai()
        kwargs: dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        self._client = openai.OpenAI(**kwargs)
        self._model = model
        self._temperature = temperature

    def complete(self, *, prompt: str, response_format: str = "text", model: str | None = None) -> dict[str, Any]:
        t0 = time.monotonic()
        kwargs: dict[str, Any] = {
            "model": model or self._model,
            "temperature": self._temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if response_format == "json":
            kwargs["response_format"] = {"type": "json_object"}
        response = self._client.chat.completions.create(**kwargs)
        content = response.choices[0].message.content or ""
        usage = response.usage
        result: dict[str, Any] = {
            "content": content,
            "model": kwargs["model"],
            "latency_ms": round((time.monotonic() - t0) * 1000, 1),
            "total_tokens": getattr(usage, "total_tokens", 0) if usage else 0,
        }
        if response_format == "json":
            try:
                result["json"] = json.loads(content)
            except json.JSONDecodeError as exc:
                raise ApiError(
                    code="LLM_OUTPUT_INVALID",
                    message="completion did not return valid JSON",
                    error_class="transient",
                    retryable=True,
                    http_status=502,
                ) from exc
        return result


class MockCompletionClient:
    def complete(self, *, prompt: str, response_format: str = "text", model: str | None = None) -> dict[str, Any]:
        result: dict[str, Any] = {
            "content": f"mock completion: {prompt[:80]}",
            "model": model or "mock",
            "latency_ms": 0.0,
            "total_tokens": 0,
        }
        if response_format == "json":
            result["json"] = {"echo": prompt[:80]}
            result["content"] = json.dumps(result["json"])
        return result


def call_webhook(entry: Mapping[str, Any], *, timeout_s: float = 10.0) -> dict[str, Any]:
    payload = entry.get("payload", {})
    method = str(payload.get("method", "POST")).upper()
    headers = {"x-trace-id": str(entry.get("trace_id") or ""), "x-idempotency-key": str(entry.get("outbox_id"))}
    try:
        response = requests.request(
            method,
            str(payload["url"]),
            json=payload.get("body"),
            headers=headers,
            timeout=timeout_s,
        )
    except requests.exceptions.RequestException as exc:
        raise _upstream_error("WEBHOOK_UNAVAILABLE", f"webhook call failed: {exc}") from exc
    if response.status_code >= 400:
        raise _upstream_error("WEBHOOK_UPSTREAM_ERROR", f"webhook returned {response.status_code}")
    return {"status_code": response.status_code}


def create_messaging_gateway_from_env(
    environ: Mapping[str, str] | None = None,
) -> HttpMessagingGateway | MockMessagingGateway:
    env = os.environ if environ is None else environ
    if env.get("CONCIERGE_GATEWAY_MODE", "mock").strip().lower() != "live":
        return MockMessagingGateway()
    return HttpMessagingGateway(
        base_url=env.get("MESSAGING_GATEWAY_URL", ""),
        token=env.get("MESSAGING_GATEWAY_TOKEN", ""),
        timeout_s=float(env.get("MESSAGING_TIMEOUT_S", "10") or "10"),
    )


def create_completion_client_from_env(
    environ: Mapping[str, str] | None = None,
) -> OpenAICompletionClient | MockCompletionClient:
    env = os.environ if environ is None else environ
    if env.get("CONCIERGE_GATEWAY_MODE", "mock").strip().lower() != "live":
        return MockCompletionClient()
    api_key = env.get("OPENAI_API_KEY", "").strip()
    if not api_key:
        raise ValueError("OPENAI_API_KEY must be set when CONCIERGE_GATEWAY_MODE=live")
    return OpenAICompletionClient(
        api_key=api_key,
        model=env.get("LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini",
        base_url=env.get("OPENAI_BASE_URL", "").strip(),
    )


def build_outbox_executors(
    *,
    messaging: Any,
    completion: Any,
    webhook: Callable[[Mapping[str, Any]], dict[str, Any]] = call_webhook,
) -> dict[str, Callable[[dict[str, Any]], dict[str, Any]]]:
    """Map outbox entry types to the call that performs them."""

    def send_message(entry: dict[str, Any]) -> dict[str, Any]:
        payload = entry["payload"]
        return messaging.send(to=payload["to"], body=payload["body"], trace_id=entry.get("trace_id"))

    def request_completion(entry: dict[str, Any]) -> dict[str, Any]:
        payload = entry["payload"]
        result = completion.complete(
            prompt=payload["prompt"],
            response_format=payload.get("response_format", "text"),
            model=payload.get("model"),
        )
        return {**result, "request_id": f"llm_{uuid.uuid4().hex[:12]}"}

    return {
        "message_send": send_message,
        "llm_request": request_completion,
        "webhook_call": webhook,
    }
