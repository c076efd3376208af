"""Speech-to-text engines and utterance endpointing.

The Whisper engine captures audio until the endpoint detector decides the
speaker has finished, then transcribes the utterance in one request and
emits a single final transcript.
"""

import asyncio
import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

import numpy as np
import soundfile as sf
from openai import AsyncOpenAI

from ..core.audio_io.audio_config import AudioConfig
from ..core.audio_io.audio_utils import (
    buffer_duration,
    downmix_to_mono,
    resample_audio,
    rms_level,
)
from ..core.audio_io.interfaces import AudioCapture
from ..core.exceptions import CarChatError, translate_error
from ..core.logging import ProcessingTimer, get_logger
from ..core.protocols import Transcript, TranscriptRole
from ..core.streams import EventStream

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)


class SpeechPaceProfile(Enum):
    FAST = "fast"
    BALANCED = "balanced"
    PATIENT = "patient"


@dataclass(frozen=True)
class SpeechEndpointingConfig:
    """Level thresholds (0..1) and durations (seconds) for endpointing."""

    speaking_start: float
    speaking_floor: float
    minimum_utterance: float
    trailing_silence_to_commit: float
    max_utterance: float
    pre_speech_timeout: float
    post_end_final_result_timeout: float

    @classmethod
    def for_profile(cls, profile: SpeechPaceProfile) -> "SpeechEndpointingConfig":
        return _PROFILES[profile]


_PROFILES = {
    SpeechPaceProfile.FAST: SpeechEndpointingConfig(
        speaking_start=0.075,
        speaking_floor=0.03,
        minimum_utterance=0.18,
        trailing_silence_to_commit=0.62,
        max_utterance=10.0,
        pre_speech_timeout=4.0,
        post_end_final_result_timeout=1.2,
    ),
    SpeechPaceProfile.BALANCED: SpeechEndpointingConfig(
        speaking_start=0.09,
        speaking_floor=0.04,
        minimum_utterance=0.25,
        trailing_silence_to_commit=0.9,
        max_utterance=11.0,
        pre_speech_timeout=4.5,
        post_end_final_result_timeout=1.5,
    ),
    SpeechPaceProfile.PATIENT: SpeechEndpointingConfig(
        speaking_start=0.10,
        speaking_floor=0.045,
        minimum_utterance=0.3,
        trailing_silence_to_commit=1.2,
        max_utterance=12.0,
        pre_speech_timeout=5.0,
        post_end_final_result_timeout=1.8,
    ),
}


class EndpointAction(Enum):
    CONTINUE_LISTENING = "continue_listening"
    END_AUDIO = "end_audio"


class VoiceEndpointDetector:
    """Energy-based end-of-utterance detection.

    Speech starts once the level reaches ``speaking_start``; after that the
    lower ``speaking_floor`` counts as speech, so a voice trailing off is not
    cut early. The detector reports ``END_AUDIO`` exactly once.
    """

    def __init__(self, config: SpeechEndpointingConfig):
        self.config = config
        self.has_detected_speech = False
        self.has_ended = False
        self.total_duration = 0.0
        self.utterance_duration = 0.0
        self.trailing_silence_duration = 0.0

    def ingest(self, normalized_level: float, duration: float) -> EndpointAction:
        if duration <= 0 or self.has_ended:
            return EndpointAction.CONTINUE_LISTENING

        self.total_duration += duration
        level = max(0.0, min(1.0, normalized_level))
        threshold = (
            self.config.speaking_floor
            if self.has_detected_speech
            else self.config.speaking_start
        )

        if level >= threshold:
            self.has_detected_speech = True
            self.utterance_duration += duration
            self.trailing_silence_duration = 0.0
            if self.utterance_duration >= self.config.max_utterance:
                return self._mark_ended()
            return EndpointAction.CONTINUE_LISTENING

        if self.has_detected_speech:
            self.trailing_silence_duration += duration

            if (
                self.utterance_duration >= self.config.minimum_utterance
                and self.trailing_silence_duration >= self.config.trailing_silence_to_commit
            ):
                return self._mark_ended()

            # A blip too short to be speech is treated like pre-speech noise
            if (
                self.utterance_duration < self.config.minimum_utterance
                and self.trailing_silence_duration >= self.config.pre_speech_timeout
            ):
                return self._mark_ended()

            if self.utterance_duration >= self.config.max_utterance:
                return self._mark_ended()

            return EndpointAction.CONTINUE_LISTENING

        if self.total_duration >= self.config.pre_speech_timeout:
            return self._mark_ended()

        return EndpointAction.CONTINUE_LISTENING

    def _mark_ended(self) -> EndpointAction:
        self.has_ended = True
        return EndpointAction.END_AUDIO


class STTEngine(ABC):
    """Speech recognizer contract.

    Transcripts and levels are pushed on streams that live as long as the
    engine, so a caller can subscribe before ``start_listening``.
    """

    def __init__(self) -> None:
        self.transcript_stream: EventStream[Transcript] = EventStream("stt.transcripts")
        self.audio_level_stream: EventStream[float] = EventStream(
            "stt.levels", maxsize=64
        )
        self.failure: Optional[CarChatError] = None

    @property
    @abstractmethod
    def is_listening(self) -> bool:
        pass

    @abstractmethod
    async def start_listening(self) -> None:
        """Begin capturing an utterance. May raise."""

    @abstractmethod
    async def stop_listening(self) -> None:
        """Stop capturing. Safe to call when not listening."""

    async def close(self) -> None:
        await self.stop_listening()


class WhisperSTTEngine(STTEngine):
    """Recognizer that endpoints locally and transcribes with Whisper."""

    def __init__(
        self,
        capture: AudioCapture,
        api_key: Optional[str] = None,
        model: str = "whisper-1",
        language: Optional[str] = "en",
        endpointing: SpeechEndpointingConfig = _PROFILES[SpeechPaceProfile.BALANCED],
        sample_rate: int = AudioConfig.STT_SAMPLE_RATE,
        chunk_size: int = AudioConfig.DEFAULT_CHUNK_SIZE,
        request_timeout: float = 30.0,
        client: Optional[Any] = None,
    ):
        super().__init__()
        self.capture = capture
        self.api_key = api_key
        self.model = model
        self.language = language
        self.endpointing = endpointing
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self.request_timeout = request_timeout
        self._client = client
        self._task: Optional[asyncio.Task] = None

    def _get_client(self) -> Any:
        """Get or create the OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.request_timeout)
        return self._client

    @property
    def is_listening(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_listening(self) -> None:
        if self.is_listening:
            return
        self.failure = None
        await self.capture.start_capture(chunk_size=self.chunk_size)
        self._task = asyncio.create_task(self._listen(), name="whisper_stt")
        logger.debug("Whisper STT listening")

    async def stop_listening(self) -> None:
        task, self._task = self._task, None
        await self.capture.stop_capture()
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _listen(self) -> None:
        detector = VoiceEndpointDetector(self.endpointing)
        buffers: List[np.ndarray] = []
        capture_rate = self.capture.sample_rate

        async for chunk in self.capture.capture_stream():
            if chunk.size == 0:
                continue
            mono = downmix_to_mono(chunk)
            level = rms_level(mono)
            self.audio_level_stream.emit(level)
            buffers.append(mono)
            action = detector.ingest(level, buffer_duration(mono, capture_rate))
            if action is EndpointAction.END_AUDIO:
                break

        await self.capture.stop_capture()

        text = ""
        if detector.has_detected_speech and buffers:
            audio = resample_audio(
                np.concatenate(buffers), orig_sr=capture_rate, target_sr=self.sample_rate
            )
            try:
                text = await self.transcribe(audio)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failure = translate_error(e, component="whisper_stt")
                logger.error(f"Transcription failed: {self.failure}")
        else:
            logger.debug("No speech detected before timeout")

        self.transcript_stream.emit(
            Transcript(text=text.strip(), is_final=True, role=TranscriptRole.USER)
        )

    async def transcribe(self, audio: np.ndarray) -> str:
        """Transcribe mono float audio at ``sample_rate``."""
        wav = io.BytesIO()
        sf.write(wav, audio, self.sample_rate, format="WAV", subtype="PCM_16")

        kwargs = {
            "model": self.model,
            "file": ("utterance.wav", wav.getvalue(), "audio/wav"),
        }
        if self.language:
            kwargs["language"] = self.language

        with ProcessingTimer(structured_logger, "transcribe", "whisper_stt"):
            result = await self._get_client().audio.transcriptions.create(**kwargs)
        return getattr(result, "text", "") or ""
