import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class CompletionError(Exception):
    pass


class CompletionClient(Protocol):
    configured: bool

    async def complete(self, prompt: str, system_message: str) -> str:
        ...


class ChatCompletionClient:
    """Client for an OpenAI-compatible ``/chat/completions`` endpoint.

    With the default ``max_attempts=1`` an upstream failure is returned to the
    caller as-is; there is no retry or backoff.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://ai.gateway.lovable.dev/v1",
        model: str = "google/gemini-3-flash-preview",
        timeout_seconds: float = 60.0,
        max_attempts: int = 1,
        force_json_object: bool = False,
    ):
        self.api_key = api_key or ""
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.force_json_object = force_json_object

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def complete(self, prompt: str, system_message: str) -> str:
        if not self.configured:
            raise CompletionError("LLM API key is not configured")

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_message},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
        }
        if self.force_json_object:
            payload["response_format"] = {"type": "json_object"}

        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(
                        f"{self.base_url}/chat/completions",
                        headers={
                            "Authorization": f"Bearer {self.api_key}",
                            "Content-Type": "application/json",
                        },
                        json=payload,
                    )
                    response.raise_for_status()
                    data = response.json()
                content = (
                    (data.get("choices") or [{}])[0]
                    .get("message", {})
                    .get("content", "")
                )
                if not isinstance(content, str) or not content.strip():
                    raise CompletionError("Empty completion content")
                logger.info(
                    "llm_completion_success model=%s attempt=%s chars=%s",
                    self.model,
                    attempt,
                    len(content),
                )
                return content
            except httpx.HTTPStatusError as e:
                status = e.response.status_code if e.response is not None else "unknown"
                last_error = f"HTTP {status}"
                logger.warning(
                    "llm_completion_status_error model=%s attempt=%s/%s status=%s",
                    self.model,
                    attempt,
                    self.max_attempts,
                    status,
                )
            except httpx.TimeoutException:
                last_error = f"timed out after {self.timeout_seconds}s"
                logger.warning(
                    "llm_completion_timeout model=%s attempt=%s/%s timeout=%s",
                    self.model,
                    attempt,
                    self.max_attempts,
                    self.timeout_seconds,
                )
            except (httpx.HTTPError, ValueError, AttributeError, IndexError) as e:
                last_error = str(e)
                logger.warning(
                    "llm_completion_error model=%s attempt=%s/%s error=%s",
                    self.model,
                    attempt,
                    self.max_attempts,
                    e,
                )
            except CompletionError as e:
                last_error = str(e)
                logger.warning("llm_completion_empty model=%s attempt=%s", self.model, attempt)
            if attempt < self.max_attempts:
                await asyncio.sleep(0.75 * attempt)

        raise CompletionError(
            f"Completion failed after {self.max_attempts} attempt(s): {last_error}"
        )
