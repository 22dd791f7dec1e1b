"""LLM client abstractions used by the classifier."""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urljoin

import httpx

from ..core.config import LlmSettings

_ATTEMPTS = 3

# Enough tokens for the longest category name and a little chatter.
LABEL_TOKEN_BUDGET = 16

_LABEL_PREFIX = re.compile(r"^(category|label|answer)\s*[:\-]\s*", re.IGNORECASE)
_LABEL_DECORATION = "*_`\"' "


class LLMError(RuntimeError):
    """Raised when the LLM provider fails to respond as expected."""


class LLMClient(Protocol):
    """Protocol describing the minimal LLM client behaviour."""

    @property
    def provider_id(self) -> str:
        """Identifier describing the backing model/provider."""
        raise NotImplementedError

    def generate(self, prompt: str) -> str:
        """Return the raw text completion for ``prompt``."""
        raise NotImplementedError


@dataclass(slots=True)
class OllamaClient:
    """Synchronous Ollama client tuned for one-label classification answers.

    Completions are short and near-deterministic: the token cap defaults to
    :data:`LABEL_TOKEN_BUDGET` and the model is asked to stop at the first
    blank line.
    """

    settings: LlmSettings
    transport: httpx.BaseTransport | None = None

    def generate(self, prompt: str) -> str:
        """Send a completion request to the Ollama server."""
        endpoint = _resolve_endpoint(self.settings.base_url)
        payload: dict[str, object] = {
            "model": self.settings.model,
            "prompt": prompt,
            "stream": False,
            "options": self._options(),
        }
        data: dict[str, object] | None = None
        last_error: Exception | None = None
        with httpx.Client(
            timeout=self.settings.timeout_seconds, transport=self.transport
        ) as client:
            for attempt in range(1, _ATTEMPTS + 1):
                try:
                    response = client.post(endpoint, json=payload)
                    response.raise_for_status()
                    data = response.json()
                    break
                except httpx.HTTPError as exc:
                    last_error = exc
                except json.JSONDecodeError as exc:
                    raise LLMError("LLM returned invalid JSON") from exc

                if attempt < _ATTEMPTS:
                    time.sleep(min(2**attempt, 8))

        if data is None:
            raise LLMError("LLM request failed after retries") from last_error

        result = data.get("response")
        if not isinstance(result, str):
            raise LLMError("LLM response missing 'response' field")
        return result

    @property
    def provider_id(self) -> str:
        """Return a human readable identifier for the configured model."""
        return f"ollama:{self.settings.model}"

    def _options(self) -> dict[str, object]:
        return {
            "temperature": self.settings.temperature,
            "num_predict": self.settings.max_output_tokens or LABEL_TOKEN_BUDGET,
            "stop": ["\n\n"],
        }


def extract_label(completion: str) -> str:
    """Return the label a model wrote on the first non-empty line.

    Markdown emphasis, quotes and a leading ``Category:`` style prefix are
    removed; an empty completion gives an empty string.
    """
    for line in completion.splitlines():
        label = _LABEL_PREFIX.sub("", line.strip(_LABEL_DECORATION))
        label = label.strip(_LABEL_DECORATION).rstrip(".")
        if label:
            return label
    return ""


def _resolve_endpoint(base_url: str) -> str:
    trimmed = base_url.rstrip("/") + "/"
    return urljoin(trimmed, "api/generate")


__all__ = ["LABEL_TOKEN_BUDGET", "LLMClient", "LLMError", "OllamaClient", "extract_label"]
