"""
Model backend implementations for CarChat.

Every backend exposes the same two capabilities: stream a reply for a
role-tagged history, and check its credential. Cloud backends use the
vendor SDK where one exists and httpx otherwise; local backends talk to an
Ollama-compatible endpoint.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import httpx

from ..exceptions import (
    BackendUnavailableError,
    InvalidCredentialError,
    error_for_status,
    translate_error,
)
from ..protocols import ChatMessage
from .translation import (
    extract_gemini_text,
    extract_openai_delta,
    parse_ollama_line,
    parse_sse_line,
    to_anthropic_request,
    to_gemini_request,
    to_ollama_request,
    to_openai_messages,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_S = 300.0
APPLE_PLATFORM_VERSION_GATE = 26


class BackendIdentifier(Enum):
    """Supported model backends and their static capability flags."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    GROK = "grok"
    APPLE = "apple"
    OLLAMA = "ollama"
    OPENCLAW = "openclaw"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def default_model(self) -> str:
        return _DEFAULT_MODELS[self]

    @property
    def requires_credential(self) -> bool:
        return self not in (
            BackendIdentifier.OLLAMA,
            BackendIdentifier.APPLE,
            BackendIdentifier.OPENCLAW,
        )

    @property
    def is_local(self) -> bool:
        return self in (BackendIdentifier.APPLE, BackendIdentifier.OLLAMA)

    @property
    def supports_realtime_voice(self) -> bool:
        return self in (BackendIdentifier.OPENAI, BackendIdentifier.GEMINI)

    @property
    def platform_version_gate(self) -> Optional[int]:
        """Minimum host platform major version, or None when ungated."""
        if self is BackendIdentifier.APPLE:
            return APPLE_PLATFORM_VERSION_GATE
        return None

    @property
    def is_currently_available(self) -> bool:
        return True

    @property
    def base_url(self) -> Optional[str]:
        return _BASE_URLS.get(self)

    @property
    def credential_key(self) -> str:
        return f"carchat.apikey.{self.value}"

    def is_supported_on(self, platform_version: int) -> bool:
        gate = self.platform_version_gate
        return gate is None or platform_version >= gate

    @classmethod
    def parse(cls, value: str) -> "BackendIdentifier":
        """Look up a backend by its raw value, case-insensitively."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown backend '{value}'. "
                f"Expected one of: {', '.join(b.value for b in cls)}"
            ) from None


_DISPLAY_NAMES = {
    BackendIdentifier.OPENAI: "OpenAI",
    BackendIdentifier.ANTHROPIC: "Anthropic",
    BackendIdentifier.GEMINI: "Google Gemini",
    BackendIdentifier.GROK: "xAI Grok",
    BackendIdentifier.APPLE: "Apple Intelligence",
    BackendIdentifier.OLLAMA: "Ollama",
    BackendIdentifier.OPENCLAW: "OpenClaw",
}

_DEFAULT_MODELS = {
    BackendIdentifier.OPENAI: "gpt-4o",
    BackendIdentifier.ANTHROPIC: "claude-sonnet-4-5-20250929",
    BackendIdentifier.GEMINI: "gemini-2.0-flash",
    BackendIdentifier.GROK: "grok-2",
    BackendIdentifier.APPLE: "apple-foundation",
    BackendIdentifier.OLLAMA: "llama3.2",
    BackendIdentifier.OPENCLAW: "default",
}

_BASE_URLS = {
    BackendIdentifier.GROK: "https://api.x.ai/v1",
    BackendIdentifier.GEMINI: "https://generativelanguage.googleapis.com",
    BackendIdentifier.OLLAMA: "http://localhost:11434",
    BackendIdentifier.APPLE: "http://localhost:11434",
}


class ModelBackend(ABC):
    """Abstract interface for model backends."""

    identifier: BackendIdentifier

    def __init__(
        self,
        model: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
    ):
        self.model = model or self.identifier.default_model
        self.timeout = timeout

    @abstractmethod
    def stream_reply(self, history: Sequence[ChatMessage]) -> AsyncIterator[str]:
        """Stream text fragments of the reply to ``history``.

        Upstream failures are raised as CarChatError subclasses, possibly
        after some fragments have already been yielded.
        """

    @abstractmethod
    async def validate_credential(self) -> bool:
        """Best-effort check that the backend accepts this client's credential."""

    async def aclose(self) -> None:
        """Release network resources held by the backend."""

    def get_capabilities(self) -> Dict[str, Any]:
        return {
            "backend": self.identifier.value,
            "model": self.model,
            "supports_streaming": True,
            "supports_realtime_voice": self.identifier.supports_realtime_voice,
            "requires_internet": not self.identifier.is_local,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model={self.model!r})"


class OpenAIBackend(ModelBackend):
    """OpenAI chat completions via the official SDK."""

    identifier = BackendIdentifier.OPENAI

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        client: Optional[Any] = None,
    ):
        super().__init__(model, timeout)
        self.api_key = api_key
        self.client = client

    async def _get_client(self) -> Any:
        """Get OpenAI client"""
        if self.client is None:
            from openai import AsyncOpenAI

            self.client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.identifier.base_url,
                timeout=self.timeout,
            )
        return self.client

    async def stream_reply(self, history: Sequence[ChatMessage]) -> AsyncIterator[str]:
        client = await self._get_client()
        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=to_openai_messages(history),
                stream=True,
            )
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise translate_error(e, component=self.identifier.value) from e

    async def validate_credential(self) -> bool:
        client = await self._get_client()
        try:
            await client.models.list()
            return True
        except Exception as e:
            logger.debug(f"{self.identifier.display_name} credential check failed: {e}")
            return False

    async def aclose(self) -> None:
        if self.client is not None and hasattr(self.client, "close"):
            await self.client.close()


class GrokBackend(OpenAIBackend):
    """xAI Grok through its OpenAI-compatible API."""

    identifier = BackendIdentifier.GROK


class AnthropicBackend(ModelBackend):
    """Anthropic messages API via the official SDK."""

    identifier = BackendIdentifier.ANTHROPIC

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        max_tokens: int = 4096,
        client: Optional[Any] = None,
    ):
        super().__init__(model, timeout)
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.client = client

    async def _get_client(self) -> Any:
        """Get Anthropic client"""
        if self.client is None:
            from anthropic import AsyncAnthropic

            self.client = AsyncAnthropic(api_key=self.api_key, timeout=self.timeout)
        return self.client

    async def stream_reply(self, history: Sequence[ChatMessage]) -> AsyncIterator[str]:
        client = await self._get_client()
        request = to_anthropic_request(history, self.model, self.max_tokens)
        try:
            stream = await client.messages.create(**request, stream=True)
            async for chunk in stream:
                if chunk.type == "content_block_delta":
                    text = getattr(chunk.delta, "text", None)
                    if text:
                        yield text
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise translate_error(e, component=self.identifier.value) from e

    async def validate_credential(self) -> bool:
        client = await self._get_client()
        try:
            await client.models.list(limit=1)
            return True
        except Exception as e:
            logger.debug(f"Anthropic credential check failed: {e}")
            return False

    async def aclose(self) -> None:
        if self.client is not None and hasattr(self.client, "close"):
            await self.client.close()


class _HTTPBackend(ModelBackend):
    """Shared httpx client handling for backends without an SDK."""

    def __init__(
        self,
        base_url: str,
        model: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(model, timeout)
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get async HTTP client"""
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url, timeout=httpx.Timeout(self.timeout)
            )
        return self.client

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code == 200:
            return
        body = (await response.aread()).decode("utf-8", errors="replace")
        raise error_for_status(
            response.status_code,
            body,
            component=self.identifier.value,
            name=self.model,
        )

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()


class GeminiBackend(_HTTPBackend):
    """Google Gemini over server-sent events."""

    identifier = BackendIdentifier.GEMINI

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(self.identifier.base_url or "", model, timeout, client)
        self.api_key = api_key

    async def stream_reply(self, history: Sequence[ChatMessage]) -> AsyncIterator[str]:
        client = await self._get_client()
        try:
            async with client.stream(
                "POST",
                f"/v1beta/models/{self.model}:streamGenerateContent",
                params={"alt": "sse", "key": self.api_key},
                json=to_gemini_request(history),
            ) as response:
                await self._raise_for_status(response)
                async for line in response.aiter_lines():
                    parsed = parse_sse_line(line)
                    if parsed is None or parsed.payload is None:
                        continue
                    text = extract_gemini_text(parsed.payload)
                    if text:
                        yield text
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise translate_error(e, component=self.identifier.value) from e

    async def validate_credential(self) -> bool:
        client = await self._get_client()
        try:
            response = await client.get("/v1beta/models", params={"key": self.api_key})
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Gemini credential check failed: {e}")
            return False


class OllamaBackend(_HTTPBackend):
    """Ollama chat API streaming newline-delimited JSON."""

    identifier = BackendIdentifier.OLLAMA

    def __init__(
        self,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            base_url or self.identifier.base_url or "", model, timeout, client
        )

    async def stream_reply(self, history: Sequence[ChatMessage]) -> AsyncIterator[str]:
        client = await self._get_client()
        try:
            async with client.stream(
                "POST", "/api/chat", json=to_ollama_request(history, self.model)
            ) as response:
                if response.status_code == 404:
                    raise BackendUnavailableError(
                        self.model,
                        hint=f"Run 'ollama pull {self.model}' first",
                        component=self.identifier.value,
                    )
                await self._raise_for_status(response)
                async for line in response.aiter_lines():
                    text, done = parse_ollama_line(line)
                    if text:
                        yield text
                    if done:
                        break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise translate_error(e, component=self.identifier.value) from e

    async def validate_credential(self) -> bool:
        client = await self._get_client()
        try:
            response = await client.get("/api/tags")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"{self.identifier.display_name} is not reachable: {e}")
            return False


class AppleFoundationBackend(OllamaBackend):
    """On-device foundation model served through the local Ollama-compatible endpoint."""

    identifier = BackendIdentifier.APPLE


class OpenClawBackend(_HTTPBackend):
    """Self-hosted OpenAI-compatible gateway."""

    identifier = BackendIdentifier.OPENCLAW

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(base_url, model, timeout, client)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    async def stream_reply(self, history: Sequence[ChatMessage]) -> AsyncIterator[str]:
        client = await self._get_client()
        try:
            async with client.stream(
                "POST",
                "/v1/chat/completions",
                headers=self._headers(),
                json={
                    "model": self.model,
                    "messages": to_openai_messages(history),
                    "stream": True,
                },
            ) as response:
                await self._raise_for_status(response)
                async for line in response.aiter_lines():
                    parsed = parse_sse_line(line)
                    if parsed is None:
                        continue
                    if parsed.done:
                        break
                    text = extract_openai_delta(parsed.payload or {})
                    if text:
                        yield text
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise translate_error(e, component=self.identifier.value) from e

    async def validate_credential(self) -> bool:
        client = await self._get_client()
        try:
            response = await client.get("/v1/models", headers=self._headers())
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"OpenClaw gateway is not reachable: {e}")
            return False


def require_credential(identifier: BackendIdentifier, credential: Optional[str]) -> str:
    """Return the stripped credential or raise InvalidCredentialError."""
    if credential is None or not credential.strip():
        raise InvalidCredentialError(
            f"{identifier.display_name} needs an API key",
            component=identifier.value,
        )
    return credential.strip()
