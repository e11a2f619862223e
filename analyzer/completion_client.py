from __future__ import annotations

import json
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from .constants import (
    ANALYSIS_SEPARATOR,
    COPILOT_SYSTEM_PROMPT,
    DEFAULT_AZURE_API_VERSION,
    DEFAULT_COPILOT_DEPLOYMENT,
    DEFAULT_LM_STUDIO_URL,
    DEFAULT_LOCAL_MODEL,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_TEMPERATURE,
    HOSTED_TIMEOUT_SECONDS,
    LOCAL_TIMEOUT_SECONDS,
    RETRIABLE_HTTP_STATUS_CODES,
)


class CompletionError(RuntimeError):
    """Raised when a completion request fails; carries the HTTP status and body when there was one."""

    def __init__(
        self,
        message: str,
        *,
        retriable: bool = False,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.retriable = retriable
        self.status_code = status_code
        self.body = body
        self.retry_after_seconds = retry_after_seconds


def _parse_retry_after_seconds(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        delay = float(raw)
        if delay > 0:
            return delay
    except ValueError:
        pass
    try:
        dt = datetime.strptime(raw, "%a, %d %b %Y %H:%M:%S GMT").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    delta = (dt - datetime.now(timezone.utc)).total_seconds()
    if delta <= 0:
        return None
    return delta


def post_request(
    *,
    url: str,
    payload: Dict[str, Any],
    headers: Optional[Dict[str, str]],
    timeout: float,
    label: str,
) -> Dict[str, Any]:
    request_headers = {"Content-Type": "application/json"}
    if headers:
        request_headers.update(headers)

    try:
        response = requests.post(url, json=payload, timeout=timeout, headers=request_headers)
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise CompletionError(f"{label} connection error: {exc}", retriable=True) from exc
    except requests.RequestException as exc:
        raise CompletionError(f"{label} connection error: {exc}", retriable=False) from exc

    if response.status_code >= 400:
        body = response.text[:500].replace("\n", " ")
        retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
        retriable = (
            response.status_code in RETRIABLE_HTTP_STATUS_CODES
            or 500 <= response.status_code < 600
        )
        raise CompletionError(
            f"{label} API error: {response.status_code} - {body}",
            retriable=retriable,
            status_code=response.status_code,
            body=body,
            retry_after_seconds=retry_after_seconds,
        )

    try:
        return response.json()
    except ValueError as exc:
        snippet = response.text[:500].replace("\n", " ")
        raise CompletionError(
            f"Invalid JSON response from {label}: {snippet}",
            status_code=response.status_code,
            body=snippet,
        ) from exc


def extract_message_content(data: Dict[str, Any]) -> str:
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise CompletionError(f"Unexpected API response format: {json.dumps(data)[:500]}") from exc
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text_parts: List[str] = []
        for item in content:
            if isinstance(item, str):
                text_parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                text_parts.append(item["text"])
        return "\n".join(text_parts)
    if content is None:
        return ""
    raise CompletionError(f"Unexpected API response content type: {type(content)}")


def send_with_retries(
    send: Callable[[], str],
    *,
    max_retries: int,
    retry_backoff: float,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            return send()
        except CompletionError as exc:
            if not exc.retriable or attempt >= attempts:
                raise
            wait = retry_backoff * (2 ** (attempt - 1))
            if exc.retry_after_seconds:
                # Jitter keeps parallel workers from retrying in lockstep.
                wait = max(wait, exc.retry_after_seconds + random.uniform(0.0, 1.5))
            sleep(max(0.0, wait))
    raise CompletionError("No completion attempts were made.")


class LocalCompletionService:
    """OpenAI-style chat completions on a local LM Studio server."""

    label = "LM Studio"

    def __init__(
        self,
        *,
        url: str = DEFAULT_LM_STUDIO_URL,
        model: str = DEFAULT_LOCAL_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        timeout: float = LOCAL_TIMEOUT_SECONDS,
        max_retries: int = 1,
        retry_backoff: float = 1.5,
    ) -> None:
        self.url = url
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

    def build_payload(self, content: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": content}],
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
        }

    def complete(self, content: str) -> str:
        def send() -> str:
            data = post_request(
                url=self.url,
                payload=self.build_payload(content),
                headers=None,
                timeout=self.timeout,
                label=self.label,
            )
            return extract_message_content(data)

        return send_with_retries(send, max_retries=self.max_retries, retry_backoff=self.retry_backoff)


class AzureCompletionService(LocalCompletionService):
    """Azure OpenAI ("Copilot") deployment addressed by base URL, deployment and API version."""

    label = "Copilot"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: Optional[str],
        deployment: str = DEFAULT_COPILOT_DEPLOYMENT,
        api_version: str = DEFAULT_AZURE_API_VERSION,
        system_prompt: str = COPILOT_SYSTEM_PROMPT,
        temperature: float = DEFAULT_TEMPERATURE,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        timeout: float = HOSTED_TIMEOUT_SECONDS,
        max_retries: int = 1,
        retry_backoff: float = 1.5,
    ) -> None:
        super().__init__(
            url=base_url or "",
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            timeout=timeout,
            max_retries=max_retries,
            retry_backoff=retry_backoff,
        )
        self.api_key = api_key
        self.base_url = base_url
        self.deployment = deployment
        self.api_version = api_version
        self.system_prompt = system_prompt

    @property
    def endpoint(self) -> str:
        base = (self.base_url or "").rstrip("/")
        return (
            f"{base}/openai/deployments/{self.deployment}/chat/completions"
            f"?api-version={self.api_version}"
        )

    def build_payload(self, content: str) -> Dict[str, Any]:
        return {
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": content},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
        }

    def complete(self, content: str) -> str:
        if not self.api_key:
            raise CompletionError(
                "COPILOT_API_KEY environment variable is required for Copilot integration"
            )
        if not self.base_url:
            raise CompletionError(
                "COPILOT_API_URL environment variable is required. Set it to your Azure "
                "OpenAI base URL (e.g., https://xxx.openai.azure.com)"
            )

        def send() -> str:
            data = post_request(
                url=self.endpoint,
                payload=self.build_payload(content),
                headers={"api-key": self.api_key},
                timeout=self.timeout,
                label=self.label,
            )
            return extract_message_content(data)

        return send_with_retries(send, max_retries=self.max_retries, retry_backoff=self.retry_backoff)


def build_completion_service(
    *,
    use_copilot: bool,
    env: Mapping[str, str],
    timeout: Optional[float] = None,
    local_timeout: float = LOCAL_TIMEOUT_SECONDS,
    model: Optional[str] = None,
    temperature: float = DEFAULT_TEMPERATURE,
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    max_retries: int = 1,
    retry_backoff: float = 1.5,
) -> LocalCompletionService:
    if use_copilot:
        return AzureCompletionService(
            api_key=env.get("COPILOT_API_KEY"),
            base_url=env.get("COPILOT_API_URL"),
            deployment=model or env.get("COPILOT_DEPLOYMENT") or DEFAULT_COPILOT_DEPLOYMENT,
            api_version=env.get("AZURE_API_VERSION") or DEFAULT_AZURE_API_VERSION,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            timeout=timeout if timeout is not None else HOSTED_TIMEOUT_SECONDS,
            max_retries=max_retries,
            retry_backoff=retry_backoff,
        )
    return LocalCompletionService(
        url=env.get("LM_STUDIO_URL") or DEFAULT_LM_STUDIO_URL,
        model=model or DEFAULT_LOCAL_MODEL,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        timeout=timeout if timeout is not None else local_timeout,
        max_retries=max_retries,
        retry_backoff=retry_backoff,
    )


def complete(prompt: str, text: str, service: Any, *, separator: str = ANALYSIS_SEPARATOR) -> str:
    return service.complete(f"{prompt}{separator}{text}")
