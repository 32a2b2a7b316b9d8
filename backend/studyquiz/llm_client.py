"""HTTP client for an OpenAI-compatible chat completions endpoint.

Only the pieces the question generator needs are implemented: a JSON-mode
chat call with a bounded retry loop and code-fence stripping of the reply.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from .errors import GenerationError

log = logging.getLogger("studyquiz.llm")

_FENCE = re.compile(r"^```[^\n]*\n(.*)```$", re.S)


@dataclass
class LlmConfig:
    """Connection settings for the external text-generation API.

    Validated on construction so a missing key fails at startup rather than
    on the first generation request.
    """
    api_key: str
    base_url: str = "https://api.deepseek.com"
    model: str = "deepseek-chat"
    timeout_seconds: float = 90.0
    clip_chars: int = 8000
    max_tokens: int = 2500
    max_retries: int = 2
    backoff_seconds: float = 0.5

    def __post_init__(self):
        if not self.api_key or not self.api_key.strip():
            raise RuntimeError("LLM API key is missing; set LLM_API_KEY")
        self.api_key = self.api_key.strip()
        self.base_url = self.base_url.rstrip("/")
        if self.timeout_seconds <= 0:
            raise RuntimeError("LLM timeout must be positive")
        self.clip_chars = max(1000, self.clip_chars)
        self.max_tokens = max(256, self.max_tokens)
        self.max_retries = max(0, self.max_retries)

    @classmethod
    def from_settings(cls, settings) -> "LlmConfig":
        return cls(
            api_key=settings.LLM_API_KEY,
            base_url=settings.LLM_BASE_URL,
            model=settings.LLM_MODEL,
            timeout_seconds=settings.LLM_TIMEOUT_SECONDS,
            clip_chars=settings.LLM_CLIP_CHARS,
            max_tokens=settings.LLM_MAX_TOKENS,
        )


def strip_code_fences(text: Optional[str]) -> str:
    """Unwrap a reply of the form ```json ... ``` and return the inner text."""
    if not text:
        return ""
    s = text.strip()
    m = _FENCE.match(s)
    if m:
        return m.group(1).strip()
    return s


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


class LlmClient:
    """Blocking chat-completions client.

    Timeouts, transport errors, HTTP 429 and 5xx are retried up to
    `config.max_retries` times with exponential backoff. Every attempt and
    every backoff sleep share one deadline of `config.timeout_seconds`.
    """

    def __init__(
        self,
        config: LlmConfig,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._sleep = sleep
        self._clock = clock
        self._http = httpx.Client(
            base_url=config.base_url,
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Accept": "application/json",
            },
            transport=transport,
        )
        log.info(
            "LLM client ready base=%s model=%s timeout=%ss clip_chars=%s max_tokens=%s",
            config.base_url, config.model, config.timeout_seconds, config.clip_chars, config.max_tokens,
        )

    def close(self) -> None:
        self._http.close()

    def chat_json(self, system: str, user: str, temperature: float = 0.3) -> str:
        """Send one system+user exchange in JSON mode and return the reply text."""
        body = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "response_format": {"type": "json_object"},
            "temperature": temperature,
            "max_tokens": self.config.max_tokens,
        }
        timeout = self.config.timeout_seconds
        deadline = self._clock() + timeout
        attempts = self.config.max_retries + 1
        last_error: Exception | None = None

        for attempt in range(attempts):
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise GenerationError(f"LLM call timed out after {timeout:.0f}s: {last_error}")
            try:
                resp = self._http.post("chat/completions", json=body, timeout=remaining)
            except httpx.TimeoutException as e:
                last_error = e
                log.warning("LLM attempt %s/%s timed out", attempt + 1, attempts)
            except httpx.TransportError as e:
                last_error = e
                log.warning("LLM attempt %s/%s transport error: %s", attempt + 1, attempts, e)
            else:
                if resp.is_success:
                    return strip_code_fences(self._message_content(resp))
                snippet = resp.text[:600]
                error = GenerationError(f"LLM HTTP {resp.status_code}" + (f" | body: {snippet}" if snippet else ""))
                if not _is_retryable_status(resp.status_code):
                    log.error("LLM call rejected: %s", error)
                    raise error
                last_error = error
                log.warning("LLM attempt %s/%s got HTTP %s", attempt + 1, attempts, resp.status_code)

            if attempt + 1 < attempts:
                delay = self.config.backoff_seconds * (2 ** attempt)
                self._sleep(max(0.0, min(delay, deadline - self._clock())))

        log.error("LLM call failed after %s attempts: %s", attempts, last_error)
        if isinstance(last_error, httpx.TimeoutException):
            raise GenerationError(f"LLM call timed out after {attempts} attempts") from last_error
        raise GenerationError(f"LLM call failed after {attempts} attempts: {last_error}") from last_error

    @staticmethod
    def _message_content(resp: httpx.Response) -> str:
        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationError(f"malformed LLM response: {e}") from e
        if not content or not str(content).strip():
            raise GenerationError("empty response from LLM")
        return str(content)
