"""Model backend adapter: one call contract over Ollama, OpenAI and Gemini."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx
import ollama

from .config import Config, get_config
from .errors import BackendError

logger = logging.getLogger("codewright.backend")

PROVIDERS = ("ollama", "openai", "gemini")

_TRANSIENT_MARKERS = (
    "connection reset", "connection refused", "eof", "broken pipe",
    "timeout", "timed out", "network", "connection error",
)


@dataclass(frozen=True)
class ProviderConfig:
    """Per-call provider settings. Empty fields fall back to the global config."""

    api_key: str = ""
    model: str = ""


class ModelBackend:
    """Uniform ``call(messages, provider, config) -> text`` over several providers."""

    def __init__(
        self,
        config: Config | None = None,
        http_client: httpx.AsyncClient | None = None,
        ollama_client: ollama.AsyncClient | None = None,
    ) -> None:
        self.cfg = config or get_config()
        self._http = http_client
        self._ollama = ollama_client

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.cfg.ollama_timeout)
        return self._http

    def _ollama_client(self) -> ollama.AsyncClient:
        if self._ollama is None:
            host = self.cfg.ollama_url.rstrip("/")
            logger.info(f"Initializing Ollama SDK client for host: {host}, timeout: {self.cfg.ollama_timeout}s")
            self._ollama = ollama.AsyncClient(host=host, timeout=self.cfg.ollama_timeout)
        return self._ollama

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def call(
        self,
        messages: list[dict[str, Any]],
        provider: str | None = None,
        config: ProviderConfig | None = None,
    ) -> str:
        """Send the conversation to ``provider`` and return the completion text."""
        provider = (provider or self.cfg.default_provider).lower()
        config = config or ProviderConfig()
        logger.debug(f"Model call: provider={provider}, {len(messages)} messages")

        if provider == "openai":
            return await self._call_openai(messages, config)
        if provider == "gemini":
            return await self._call_gemini(messages, config)
        if provider == "ollama":
            return await self._call_ollama(messages, config)
        raise BackendError(
            f"Unknown provider '{provider}'. Valid providers: {', '.join(PROVIDERS)}",
            provider=provider,
        )

    async def health_check(self) -> bool:
        """Check if the local Ollama server is reachable."""
        try:
            await self._ollama_client().list()
            return True
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError):
            return False

    async def list_models(self) -> list[dict[str, Any]]:
        """Models installed on the local Ollama server."""
        try:
            response = await self._ollama_client().list()
        except ollama.ResponseError as e:
            raise BackendError(str(e.error), status=e.status_code, provider="ollama") from e
        except (httpx.HTTPError, ConnectionError) as e:
            raise BackendError(f"Cannot reach Ollama: {e}", provider="ollama") from e

        models = response.models if hasattr(response, "models") else response.get("models", [])
        return [
            model.model_dump(mode="json") if hasattr(model, "model_dump") else model
            for model in models
        ]

    # ── Providers ──

    async def _call_ollama(
        self, messages: list[dict[str, Any]], config: ProviderConfig, max_retries: int = 2
    ) -> str:
        model = config.model or self.cfg.ollama_model
        last_err: Exception | None = None
        for attempt in range(max_retries + 1):
            try:
                response = await self._ollama_client().chat(
                    model=model,
                    messages=messages,
                    stream=False,
                    options={"temperature": self.cfg.model_temperature},
                )
            except ollama.ResponseError as e:
                logger.error(f"Ollama ResponseError: {e.error}")
                raise BackendError(str(e.error), status=e.status_code, provider="ollama") from e
            except (httpx.HTTPError, ConnectionError) as e:
                err_str = str(e).lower()
                is_transient = any(k in err_str for k in _TRANSIENT_MARKERS)
                if is_transient and attempt < max_retries:
                    wait = 1.5 * (attempt + 1)
                    logger.warning(
                        f"Transient Ollama error (attempt {attempt + 1}/{max_retries + 1}), "
                        f"retrying in {wait:.1f}s: {e}"
                    )
                    last_err = e
                    await asyncio.sleep(wait)
                    continue
                raise BackendError(f"Cannot reach Ollama: {e}", provider="ollama") from e

            content = _ollama_content(response)
            if content is None:
                raise BackendError("Malformed Ollama response: missing message content", provider="ollama")
            return content

        raise BackendError(
            f"Ollama connection failed after {max_retries + 1} attempts: {last_err}",
            provider="ollama",
        )

    async def _call_openai(self, messages: list[dict[str, Any]], config: ProviderConfig) -> str:
        api_key = config.api_key or self.cfg.openai_key
        response = await self._post(
            "openai",
            self.cfg.openai_url,
            headers={"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"},
            json={
                "model": config.model or self.cfg.openai_model,
                "messages": messages,
                "temperature": self.cfg.model_temperature,
            },
        )
        try:
            return response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise BackendError(f"Malformed OpenAI response: {e}", status=response.status_code, provider="openai") from e

    async def _call_gemini(self, messages: list[dict[str, Any]], config: ProviderConfig) -> str:
        contents = [
            {
                "role": "model" if m["role"] == "assistant" else m["role"],
                "parts": [{"text": m["content"]}],
            }
            for m in messages
            if m["role"] != "system"
        ]
        body: dict[str, Any] = {"contents": contents}
        system_msg = next((m for m in messages if m["role"] == "system"), None)
        if system_msg:
            body["system_instruction"] = {"parts": [{"text": system_msg["content"]}]}

        model = config.model or self.cfg.gemini_model
        response = await self._post(
            "gemini",
            f"{self.cfg.gemini_url.rstrip('/')}/{model}:generateContent",
            headers={"Content-Type": "application/json"},
            params={"key": config.api_key or self.cfg.gemini_key},
            json=body,
        )
        try:
            return response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise BackendError(f"Malformed Gemini response: {e}", status=response.status_code, provider="gemini") from e

    async def _post(self, provider: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http_client().post(url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{provider} request failed: {e}")
            raise BackendError(f"Request failed: {e}", provider=provider) from e
        if response.status_code >= 400:
            logger.error(f"{provider} HTTP error {response.status_code}")
            raise BackendError(response.text[:2000], status=response.status_code, provider=provider)
        return response


def _ollama_content(response: Any) -> str | None:
    """Pull ``message.content`` out of an SDK response object or a plain dict."""
    if hasattr(response, "model_dump"):
        response = response.model_dump()
    if not isinstance(response, dict):
        return None
    message = response.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None
