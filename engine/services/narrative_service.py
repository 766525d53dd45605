"""Client for the external narrative generator (OpenAI-compatible chat completions)."""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from config import settings
from errors import GenerationFailure

logger = logging.getLogger(__name__)


class NarrativeGenerator:
    """Turns a prompt into a JSON object. Implementations raise GenerationFailure on any problem."""

    def generate(self, prompt: str, max_tokens: int) -> Dict[str, Any]:
        raise NotImplementedError


class ChatCompletionsGenerator(NarrativeGenerator):
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.NARRATIVE_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.NARRATIVE_API_KEY
        self.model = model or settings.NARRATIVE_MODEL
        self.temperature = settings.NARRATIVE_TEMPERATURE if temperature is None else temperature
        self.timeout = timeout or settings.NARRATIVE_TIMEOUT_SECONDS
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def generate(self, prompt: str, max_tokens: int) -> Dict[str, Any]:
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "response_format": {"type": "json_object"},
            "max_tokens": max_tokens,
            "temperature": self.temperature,
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(f"{self.base_url}/chat/completions", json=body, headers=self._headers())
                resp.raise_for_status()
                completion = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise GenerationFailure(f"Narrative generator request failed: {exc}") from exc

        try:
            content = completion["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationFailure("Narrative generator returned no message content") from exc

        if isinstance(content, list):
            # Content-part form: [{"type": "text", "text": "..."}]
            content = "".join(
                str(part.get("text") or "") for part in content if isinstance(part, dict) and part.get("type") == "text"
            )

        try:
            data = json.loads(content or "")
        except (json.JSONDecodeError, TypeError) as exc:
            logger.debug("Unparsable generator output: %r", content)
            raise GenerationFailure(f"Narrative generator returned invalid JSON: {exc}") from exc

        if not isinstance(data, dict):
            raise GenerationFailure("Narrative generator returned a non-object JSON value")
        logger.info("Narrative generator responded (%d chars)", len(content))
        return data


def get_narrative_generator() -> NarrativeGenerator:
    return ChatCompletionsGenerator()
