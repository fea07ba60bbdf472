from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from openai import OpenAI

from applyflow.config import Settings
from applyflow.types import ModelResponse

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProviderConfig:
    name: str
    base_url: str
    api_key: str
    model: str
    timeout_sec: int


class LLMProvider:
    """OpenAI-compatible text completion, usable against OpenAI or a local server."""

    def __init__(self, config: ProviderConfig, client: Any = None):
        self.config = config
        self.client = client or OpenAI(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=float(config.timeout_sec),
        )

    def complete_text(self, prompt: str) -> ModelResponse:
        try:
            response = self.client.responses.create(
                model=self.config.model,
                input=[{"role": "user", "content": [{"type": "input_text", "text": prompt}]}],
            )
        except Exception as exc:
            if not _is_missing_endpoint(exc):
                raise
            # Local servers (ollama, vLLM) often expose only chat.completions.
            logger.warning(
                "Responses API unavailable provider=%s; using chat.completions (%s)",
                self.config.name,
                exc,
            )
            response = self.client.chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": prompt}],
            )
            return ModelResponse(content=_chat_text(response), raw=_raw(response, "chat_completions"))

        text = getattr(response, "output_text", "") or ""
        return ModelResponse(content=text, raw=_raw(response, "responses"))

    def complete_json(self, prompt: str) -> dict[str, Any]:
        return parse_json(self.complete_text(prompt).content)


class ProviderPool:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._providers: dict[str, LLMProvider] = {}

    def enabled(self) -> list[LLMProvider]:
        """Configured providers, the preferred one first."""
        names = ["openai", "local"]
        if self.settings.ai_provider == "local":
            names.reverse()
        return [self.get(name) for name in names if self.is_configured(name)]

    def is_configured(self, name: str) -> bool:
        if name == "openai":
            return bool(self.settings.openai_api_key)
        if name == "local":
            return self.settings.local_llm_enabled
        return False

    def get(self, name: str) -> LLMProvider:
        if name not in self._providers:
            if name == "local":
                config = ProviderConfig(
                    name="local",
                    base_url=self.settings.local_llm_base_url,
                    api_key=self.settings.local_llm_api_key,
                    model=self.settings.local_llm_model,
                    timeout_sec=self.settings.local_llm_timeout_sec,
                )
            else:
                config = ProviderConfig(
                    name="openai",
                    base_url=self.settings.openai_base_url,
                    api_key=self.settings.openai_api_key,
                    model=self.settings.openai_model_writer,
                    timeout_sec=self.settings.openai_timeout_sec,
                )
            self._providers[name] = LLMProvider(config)
        return self._providers[name]


def parse_json(content: str) -> dict[str, Any]:
    candidate = content.strip()
    if "```" in candidate:
        for part in candidate.split("```"):
            part = part.strip()
            if part.startswith("json"):
                part = part[4:].strip()
            if part.startswith("{") and part.endswith("}"):
                candidate = part
                break

    if not candidate:
        return {}
    try:
        value = json.loads(candidate)
    except json.JSONDecodeError:
        logger.warning("Failed to parse JSON model output")
        return {}
    return value if isinstance(value, dict) else {}


def _is_missing_endpoint(exc: Exception) -> bool:
    if getattr(exc, "status_code", None) == 404:
        return True
    message = str(exc).strip().lower()
    return bool(message) and ("not found" in message or "404" in message)


def _chat_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None) if message is not None else None
    if content is None:
        return ""
    return content if isinstance(content, str) else str(content)


def _raw(response: Any, api_path: str) -> dict[str, Any]:
    raw = response.model_dump() if hasattr(response, "model_dump") else {}
    if not isinstance(raw, dict):
        raw = {"raw": raw}
    raw["api_path"] = api_path
    return raw
