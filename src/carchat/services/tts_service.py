"""Text-to-speech engines.

``SystemTTS`` speaks through the platform voice via pyttsx3 and is always
available. The network engines stream PCM16 from OpenAI or ElevenLabs into
the audio player and fall back to the system voice when a request fails,
so a synthesis problem never ends a conversation.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from contextlib import aclosing
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional

import httpx

from ..core.audio_io.audio_config import AudioConfig
from ..core.audio_io.audio_utils import pcm16_to_float
from ..core.audio_io.interfaces import AudioPlayer
from ..core.audio_io.session_manager import AudioSessionManager
from ..core.config import TTSConfig
from ..core.exceptions import (
    AudioSessionError,
    UnknownProviderError,
    error_for_status,
    translate_error,
)
from ..core.llm.providers import BackendIdentifier
from ..core.stores import ELEVENLABS_CREDENTIAL_KEY, CredentialStore, SettingsStore
from ..core.streams import OnceSignal

logger = logging.getLogger(__name__)

SYNTHESIS_WATCHDOG_S = 15.0


def route_for_speaking(
    session_manager: Optional[AudioSessionManager], for_synthesizer: bool = False
) -> None:
    """Route playback to the loudspeaker; a refused route still lets speech play."""
    if session_manager is None:
        return
    try:
        session_manager.configure_for_speaking(for_synthesizer=for_synthesizer)
    except AudioSessionError as e:
        logger.warning(f"Could not route audio for speaking: {e}")


class TTSEngineType(Enum):
    SYSTEM = "system"
    OPENAI = "openai"
    ELEVENLABS = "elevenlabs"

    @property
    def display_name(self) -> str:
        return {
            TTSEngineType.SYSTEM: "System voice",
            TTSEngineType.OPENAI: "OpenAI",
            TTSEngineType.ELEVENLABS: "ElevenLabs",
        }[self]

    @classmethod
    def parse(cls, value: str) -> "TTSEngineType":
        normalized = value.strip().lower().replace("_", "").replace("-", "")
        for engine in cls:
            if engine.value == normalized:
                return engine
        raise ValueError(f"Unknown speech engine: {value}")


class SpeechSynthesizer(ABC):
    """Synthesis backend contract.

    ``speak`` completes when the audio has finished or was stopped.
    ``stop`` is idempotent.
    """

    @property
    @abstractmethod
    def is_speaking(self) -> bool:
        pass

    @abstractmethod
    async def speak(self, text: str) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    async def close(self) -> None:
        await self.stop()


class SystemTTS(SpeechSynthesizer):
    """On-device synthesis through pyttsx3.

    The engine runs on one dedicated worker thread. Its completion is bridged
    into asyncio through a one-shot signal that a watchdog resolves if the
    engine never reports back.
    """

    def __init__(
        self,
        rate: int = 180,
        voice_id: Optional[str] = None,
        session_manager: Optional[AudioSessionManager] = None,
        watchdog_s: float = SYNTHESIS_WATCHDOG_S,
        engine: Optional[Any] = None,
    ):
        self.rate = rate
        self.voice_id = voice_id
        self.session_manager = session_manager
        self.watchdog_s = watchdog_s
        self._engine = engine
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="system_tts")
        self._signal: Optional[OnceSignal] = None
        self._is_speaking = False

    @property
    def is_speaking(self) -> bool:
        return self._is_speaking

    def _get_engine(self) -> Any:
        """Get or create the pyttsx3 engine (worker thread only)."""
        if self._engine is None:
            import pyttsx3

            engine = pyttsx3.init()
            engine.setProperty("rate", self.rate)
            if self.voice_id:
                engine.setProperty("voice", self.voice_id)
            self._engine = engine
        return self._engine

    def _speak_blocking(self, text: str) -> None:
        engine = self._get_engine()
        engine.say(text)
        engine.runAndWait()

    async def speak(self, text: str) -> None:
        if not text:
            return

        await self.stop()
        route_for_speaking(self.session_manager, for_synthesizer=True)

        loop = asyncio.get_running_loop()
        signal = OnceSignal("system_tts", loop)
        self._signal = signal
        self._is_speaking = True

        future = loop.run_in_executor(self._executor, self._speak_blocking, text)
        future.add_done_callback(lambda f: self._on_finished(f, signal))

        try:
            await signal.wait(timeout=self.watchdog_s)
            if signal.resolved_by == "watchdog":
                logger.warning(
                    f"System speech gave no completion within {self.watchdog_s}s, "
                    f"forcing completion"
                )
                self._interrupt_engine()
        except asyncio.CancelledError:
            self._interrupt_engine()
            signal.resolve("cancelled")
            raise
        finally:
            if self._signal is signal:
                self._signal = None
                self._is_speaking = False

    @staticmethod
    def _on_finished(future: asyncio.Future, signal: OnceSignal) -> None:
        if future.cancelled():
            signal.resolve("cancelled")
            return
        error = future.exception()
        if error is not None:
            logger.error(f"System speech failed: {error}")
            signal.resolve("error")
            return
        signal.resolve("finished")

    def _interrupt_engine(self) -> None:
        if self._engine is None:
            return
        try:
            self._engine.stop()
        except Exception as e:
            logger.debug(f"Stopping system speech engine failed: {e}")

    async def stop(self) -> None:
        signal, self._signal = self._signal, None
        if signal is not None:
            self._interrupt_engine()
            signal.resolve("stopped")
        self._is_speaking = False

    async def close(self) -> None:
        await self.stop()
        self._executor.shutdown(wait=False)


class _StreamingSynthesizer(SpeechSynthesizer):
    """Network engine streaming PCM16 into the audio player."""

    component = "tts"

    def __init__(
        self,
        player: AudioPlayer,
        session_manager: Optional[AudioSessionManager] = None,
        fallback: Optional[SystemTTS] = None,
        timeout: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
        sample_rate: int = AudioConfig.REALTIME_SAMPLE_RATE,
    ):
        self.player = player
        self.session_manager = session_manager
        self.timeout = timeout
        self.sample_rate = sample_rate
        self._fallback = fallback
        self._client = client
        self._generation = 0
        self._is_speaking = False

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @property
    def fallback(self) -> SystemTTS:
        if self._fallback is None:
            self._fallback = SystemTTS(session_manager=self.session_manager)
        return self._fallback

    @property
    def is_speaking(self) -> bool:
        return self._is_speaking

    @abstractmethod
    def _stream_audio(self, text: str) -> AsyncIterator[bytes]:
        """Yield raw PCM16 mono bytes at ``sample_rate``."""

    async def speak(self, text: str) -> None:
        if not text:
            return

        await self.stop()
        generation = self._generation
        route_for_speaking(self.session_manager)
        self._is_speaking = True
        scheduled = False

        try:
            if not self.player.is_playing():
                await self.player.start(self.sample_rate)

            carry = b""
            async with aclosing(self._stream_audio(text)) as chunks:
                async for chunk in chunks:
                    if generation != self._generation:
                        return
                    data = carry + chunk
                    usable = len(data) - len(data) % AudioConfig.PCM16_BYTES_PER_SAMPLE
                    carry = data[usable:]
                    if usable:
                        self.player.schedule(pcm16_to_float(data[:usable]))
                        scheduled = True

            if not scheduled:
                raise UnknownProviderError("Empty audio response", component=self.component)
            await self.player.wait_until_drained()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation != self._generation:
                return
            error = translate_error(e, component=self.component)
            if scheduled:
                logger.error(f"{self.component} playback failed: {error}")
            else:
                logger.error(
                    f"{self.component} synthesis failed: {error}, "
                    f"falling back to system speech"
                )
                await self.fallback.speak(text)
        finally:
            if generation == self._generation:
                self._is_speaking = False

    async def stop(self) -> None:
        self._generation += 1
        was_speaking, self._is_speaking = self._is_speaking, False
        if was_speaking:
            await self.player.stop()
        if self._fallback is not None:
            await self._fallback.stop()

    async def close(self) -> None:
        await self.stop()
        if self._fallback is not None:
            await self._fallback.close()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code == 200:
            return
        body = (await response.aread()).decode("utf-8", errors="replace")
        raise error_for_status(response.status_code, body, component=self.component)


class OpenAITTS(_StreamingSynthesizer):
    """OpenAI ``/v1/audio/speech`` with raw PCM output."""

    component = "openai_tts"
    VOICES = (
        "alloy",
        "ash",
        "ballad",
        "coral",
        "echo",
        "fable",
        "nova",
        "onyx",
        "sage",
        "shimmer",
    )

    def __init__(
        self,
        api_key: str,
        player: AudioPlayer,
        voice: str = "nova",
        model: str = "tts-1",
        base_url: str = "https://api.openai.com",
        **kwargs: Any,
    ):
        super().__init__(player, **kwargs)
        self.api_key = api_key
        self.voice = voice
        self.model = model
        self.base_url = base_url.rstrip("/")

    def set_voice(self, voice: str) -> None:
        if voice in self.VOICES:
            self.voice = voice

    async def _stream_audio(self, text: str) -> AsyncIterator[bytes]:
        async with self._get_client().stream(
            "POST",
            f"{self.base_url}/v1/audio/speech",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "input": text,
                "voice": self.voice,
                "response_format": "pcm",
            },
        ) as response:
            await self._raise_for_status(response)
            async for chunk in response.aiter_bytes():
                yield chunk


class ElevenLabsModel(Enum):
    FLASH = "eleven_flash_v2_5"
    TURBO = "eleven_turbo_v2_5"
    MULTILINGUAL_V2 = "eleven_multilingual_v2"
    ENGLISH_V1 = "eleven_monolingual_v1"

    @property
    def optimize_latency(self) -> int:
        return {
            ElevenLabsModel.FLASH: 4,
            ElevenLabsModel.TURBO: 3,
            ElevenLabsModel.MULTILINGUAL_V2: 2,
            ElevenLabsModel.ENGLISH_V1: 2,
        }[self]


@dataclass(frozen=True)
class ElevenLabsVoiceSettings:
    stability: float
    similarity_boost: float
    style: float
    use_speaker_boost: bool

    def to_dict(self) -> dict:
        return asdict(self)


CONVERSATIONAL = ElevenLabsVoiceSettings(0.5, 0.75, 0.0, True)
EXPRESSIVE = ElevenLabsVoiceSettings(0.3, 0.85, 0.4, True)
CLEAR = ElevenLabsVoiceSettings(0.8, 0.6, 0.0, True)

DEFAULT_ELEVENLABS_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"


class ElevenLabsTTS(_StreamingSynthesizer):
    """ElevenLabs streaming endpoint with 24 kHz PCM output."""

    component = "elevenlabs_tts"

    def __init__(
        self,
        api_key: str,
        player: AudioPlayer,
        voice_id: str = DEFAULT_ELEVENLABS_VOICE_ID,
        model: ElevenLabsModel = ElevenLabsModel.FLASH,
        voice_settings: ElevenLabsVoiceSettings = CONVERSATIONAL,
        base_url: str = "https://api.elevenlabs.io",
        **kwargs: Any,
    ):
        super().__init__(player, **kwargs)
        self.api_key = api_key
        self.voice_id = voice_id
        self.model = model
        self.voice_settings = voice_settings
        self.base_url = base_url.rstrip("/")

    async def _stream_audio(self, text: str) -> AsyncIterator[bytes]:
        async with self._get_client().stream(
            "POST",
            f"{self.base_url}/v1/text-to-speech/{self.voice_id}/stream",
            params={"output_format": f"pcm_{self.sample_rate}"},
            headers={"xi-api-key": self.api_key},
            json={
                "text": text,
                "model_id": self.model.value,
                "voice_settings": self.voice_settings.to_dict(),
                "optimize_streaming_latency": self.model.optimize_latency,
            },
        ) as response:
            await self._raise_for_status(response)
            async for chunk in response.aiter_bytes():
                yield chunk


async def create_synthesizer(
    config: TTSConfig,
    player: AudioPlayer,
    credentials: CredentialStore,
    settings: Optional[SettingsStore] = None,
    session_manager: Optional[AudioSessionManager] = None,
    persona: Optional[str] = None,
    watchdog_s: float = SYNTHESIS_WATCHDOG_S,
) -> SpeechSynthesizer:
    """Pick the synthesis engine from configuration and stored credentials.

    A network engine without a usable credential degrades to the system
    voice instead of failing.
    """
    system = SystemTTS(
        rate=config.system_rate, session_manager=session_manager, watchdog_s=watchdog_s
    )
    engine = TTSEngineType.parse(config.engine)
    if engine is TTSEngineType.SYSTEM:
        return system

    credential_key = (
        BackendIdentifier.OPENAI.credential_key
        if engine is TTSEngineType.OPENAI
        else ELEVENLABS_CREDENTIAL_KEY
    )
    try:
        api_key = await credentials.get(credential_key)
    except Exception as e:
        logger.warning(f"Could not read {engine.display_name} credential: {e}")
        api_key = None

    if not api_key or not api_key.strip():
        logger.info(f"No {engine.display_name} credential, using system voice")
        return system

    common = {
        "session_manager": session_manager,
        "fallback": system,
        "timeout": config.request_timeout_s,
    }
    if engine is TTSEngineType.OPENAI:
        return OpenAITTS(
            api_key.strip(),
            player,
            voice=config.openai_voice,
            model=config.openai_model,
            **common,
        )

    voice_id = None
    if settings is not None and persona:
        voice_id = settings.voice_id(persona)
    return ElevenLabsTTS(
        api_key.strip(),
        player,
        voice_id=voice_id or config.elevenlabs_voice_id,
        model=ElevenLabsModel(config.elevenlabs_model),
        **common,
    )
