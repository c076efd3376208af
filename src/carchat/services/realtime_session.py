"""
Full-duplex realtime voice session.

A persistent websocket to the realtime proxy carries microphone audio up and
model audio, transcripts and voice-activity events down. The server decides
when the user has finished speaking; when it hears the user start again
while the assistant is talking, queued playback is dropped before any later
audio is scheduled.
"""

import asyncio
import base64
import json
import logging
from contextlib import aclosing
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import websockets

from ..core.audio_io.realtime_audio import RealtimeAudioIO
from ..core.audio_io.session_manager import AudioSessionManager
from ..core.config import RealtimeConfig
from ..core.exceptions import audio_error, translate_error
from ..core.llm.providers import BackendIdentifier
from ..core.logging import get_logger
from ..core.protocols import SessionState, Transcript, TranscriptRole
from .base_session import BaseVoiceSession

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

CONNECTION_LOST_MESSAGE = "Connection lost"

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


def realtime_route(
    backend: BackendIdentifier, config: RealtimeConfig
) -> Tuple[str, str]:
    """Proxy provider name and model for ``backend``.

    Backends without a realtime voice model use the OpenAI one.
    """
    if backend is BackendIdentifier.GEMINI:
        return "gemini_live", config.gemini_model
    return "openai_realtime", config.openai_model


def build_realtime_url(proxy_url: str, provider: str, model: str, device_id: str) -> str:
    query = urlencode({"provider": provider, "model": model, "device_id": device_id})
    separator = "&" if "?" in proxy_url else "?"
    return f"{proxy_url}{separator}{query}"


def build_session_update(instructions: str, config: RealtimeConfig) -> Dict[str, Any]:
    return {
        "type": "session.update",
        "session": {
            "modalities": ["text", "audio"],
            "instructions": instructions,
            "voice": config.voice,
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "input_audio_transcription": {"model": config.transcription_model},
            "turn_detection": {
                "type": "server_vad",
                "threshold": config.vad_threshold,
                "prefix_padding_ms": config.prefix_padding_ms,
                "silence_duration_ms": config.silence_duration_ms,
            },
        },
    }


class RealtimeVoiceSession(BaseVoiceSession):
    """Continuous streaming session over the realtime proxy."""

    def __init__(
        self,
        audio: RealtimeAudioIO,
        auth_token: Optional[str],
        device_id: str,
        backend: BackendIdentifier = BackendIdentifier.OPENAI,
        config: Optional[RealtimeConfig] = None,
        session_manager: Optional[AudioSessionManager] = None,
        connect: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        super().__init__("realtime")
        self.audio = audio
        self.auth_token = auth_token
        self.device_id = device_id
        self.backend = backend
        self.config = config or RealtimeConfig()
        self.session_manager = session_manager
        self._connect = connect or websockets.connect
        self._ws: Optional[Any] = None
        self._send_queue: asyncio.Queue = asyncio.Queue()
        self._transport_open = False
        self._stopping = False
        self._assistant_text = ""

        self._handlers: Dict[str, Handler] = {
            "input_audio_buffer.speech_started": self._on_speech_started,
            "input_audio_buffer.speech_stopped": self._on_speech_stopped,
            "response.audio_transcript.delta": self._on_transcript_delta,
            "response.audio.delta": self._on_audio_delta,
            "response.audio_transcript.done": self._on_transcript_done,
            "conversation.item.input_audio_transcription.completed": (
                self._on_input_transcription
            ),
            "response.done": self._on_response_done,
            "error": self._on_error,
        }

    @property
    def is_connected(self) -> bool:
        return self._transport_open

    async def start(self, system_prompt: str) -> None:
        self._ensure_startable()
        if self._started:
            logger.warning("Realtime session already started")
            return

        if self.session_manager is not None:
            self.session_manager.configure_for_duplex()

        provider, model = realtime_route(self.backend, self.config)
        url = build_realtime_url(self.config.proxy_url, provider, model, self.device_id)
        headers = {}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        try:
            self._ws = await self._connect(url, additional_headers=headers, max_size=None)
        except Exception as e:
            error = translate_error(e, component="realtime")
            self._fail(error)
            if self.session_manager is not None:
                self.session_manager.deactivate()
            raise error from e

        self._started = True
        self._transport_open = True
        structured_logger.info(
            "session_started",
            session=self.name,
            session_id=self.session_id,
            provider=provider,
            model=model,
        )

        # Configuration goes out ahead of any captured audio
        self._enqueue(build_session_update(system_prompt, self.config))
        self._track(self._send_pump(), "send_pump")
        self._track(self._receive_loop(), "receive_loop")

        levels = self.audio.audio_levels.subscribe()
        self._track(self._forward_levels(levels), "level_forwarding")
        try:
            await self.audio.start_capture(self._on_capture_chunk)
        except Exception as e:
            error = audio_error(e, component="realtime_audio")
            await self._abandon_start()
            self._fail(error)
            raise error from e
        self._update_state(SessionState.LISTENING)

    async def _abandon_start(self) -> None:
        """Undo a start whose audio could not be opened so it can be retried."""
        self._transport_open = False
        self._started = False
        await self._cancel_tasks()
        self._send_queue = asyncio.Queue()
        try:
            await self.audio.stop_capture()
        except Exception as e:
            logger.debug(f"Stopping realtime audio after failed start failed: {e}")
        await self._close_socket()
        if self.session_manager is not None:
            self.session_manager.deactivate()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._stopping = True
        self._transport_open = False

        await self._cancel_tasks()
        try:
            await self.audio.stop_capture()
        except Exception as e:
            logger.warning(f"Stopping realtime audio failed: {e}")

        await self._close_socket()

        self._update_state(SessionState.IDLE)
        self._finish_streams()
        if self.session_manager is not None:
            self.session_manager.deactivate()
        structured_logger.info(
            "session_stopped", session=self.name, session_id=self.session_id
        )

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Closing realtime connection failed: {e}")

    async def interrupt(self) -> None:
        """Drop queued assistant audio and ask the server to cancel the response."""
        if not self._started or self._stopped:
            return
        await self.audio.clear_playback_queue()
        self._enqueue({"type": "response.cancel"})
        self._assistant_text = ""
        self._update_state(SessionState.LISTENING)

    def _enqueue(self, event: Dict[str, Any]) -> None:
        if not self._transport_open:
            return
        self._send_queue.put_nowait(json.dumps(event))

    def _on_capture_chunk(self, pcm: bytes) -> None:
        self._enqueue(
            {
                "type": "input_audio_buffer.append",
                "audio": base64.b64encode(pcm).decode("ascii"),
            }
        )

    async def _forward_levels(self, levels) -> None:
        async with aclosing(levels) as stream:
            async for level in stream:
                self._emit_level(level)

    async def _send_pump(self) -> None:
        while True:
            frame = await self._send_queue.get()
            try:
                await self._ws.send(frame)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._connection_lost(e)
                return

    async def _receive_loop(self) -> None:
        while True:
            try:
                raw = await self._ws.recv()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._connection_lost(e)
                return
            try:
                await self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._terminate(audio_error(e, component="realtime_audio"))
                return

    async def _connection_lost(self, exc: BaseException) -> None:
        if self._stopping or not self._transport_open:
            return
        logger.error(f"Realtime connection lost: {exc!r}")
        await self._terminate(RuntimeError(CONNECTION_LOST_MESSAGE))

    async def _terminate(self, exc: BaseException) -> None:
        """End the session in the error state; no reconnect is attempted."""
        if self._stopping or not self._transport_open:
            return
        self._transport_open = False
        self._fail(exc)
        try:
            await self.audio.stop_capture()
        except Exception as e:
            logger.debug(f"Stopping capture after session failure failed: {e}")

    async def handle_message(self, raw: Any) -> None:
        """Dispatch one inbound frame. Unknown or malformed frames are ignored."""
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            event = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-JSON realtime frame")
            return
        if not isinstance(event, dict):
            return

        handler = self._handlers.get(event.get("type", ""))
        if handler is None:
            logger.debug(f"Ignoring realtime event {event.get('type')!r}")
            return
        await handler(event)

    async def _on_speech_started(self, event: Dict[str, Any]) -> None:
        self._update_state(SessionState.LISTENING)
        await self.audio.clear_playback_queue()

    async def _on_speech_stopped(self, event: Dict[str, Any]) -> None:
        self._update_state(SessionState.PROCESSING)

    async def _on_transcript_delta(self, event: Dict[str, Any]) -> None:
        self._assistant_text += event.get("delta") or ""
        self._emit_transcript(
            Transcript(self._assistant_text, is_final=False, role=TranscriptRole.ASSISTANT)
        )

    async def _on_audio_delta(self, event: Dict[str, Any]) -> None:
        if self._state != SessionState.SPEAKING:
            self._update_state(SessionState.SPEAKING)
        try:
            data = base64.b64decode(event.get("delta") or "")
        except ValueError:
            logger.debug("Ignoring undecodable audio delta")
            return
        self.audio.play_audio_chunk(data)

    async def _on_transcript_done(self, event: Dict[str, Any]) -> None:
        text = event.get("transcript") or self._assistant_text
        self._emit_transcript(
            Transcript(text, is_final=True, role=TranscriptRole.ASSISTANT)
        )
        self._assistant_text = ""

    async def _on_input_transcription(self, event: Dict[str, Any]) -> None:
        text = (event.get("transcript") or "").strip()
        if text:
            self._emit_transcript(Transcript(text, is_final=True, role=TranscriptRole.USER))

    async def _on_response_done(self, event: Dict[str, Any]) -> None:
        self._assistant_text = ""
        self._update_state(SessionState.LISTENING)

    async def _on_error(self, event: Dict[str, Any]) -> None:
        error = event.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        logger.error(f"Realtime server error: {error}")
        self._update_state(SessionState.error(message or "Realtime error"))
