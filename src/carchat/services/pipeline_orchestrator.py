"""Turn-based voice pipeline: listen, transcribe, stream a reply, speak.

The reply is spoken sentence by sentence while it is still streaming, so the
first sentence is audible long before the model has finished.
"""

import asyncio
import logging
import re
from contextlib import aclosing
from typing import AsyncIterator, List, Optional, Pattern, Tuple, Union

from ..core.audio_io.session_manager import AudioSessionManager
from ..core.exceptions import audio_error, translate_error
from ..core.llm.access_policy import mark_backend_as_working
from ..core.llm.providers import BackendIdentifier, ModelBackend
from ..core.logging import ProcessingTimer, get_logger
from ..core.protocols import (
    ChatMessage,
    MessageRole,
    SessionPhase,
    SessionState,
    Transcript,
    TranscriptRole,
)
from ..core.stores import SettingsStore
from .base_session import BaseVoiceSession
from .stt_service import STTEngine
from .tts_service import SpeechSynthesizer

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

DEFAULT_SENTENCE_PATTERN = r"[.!?] "


def flush_sentences(
    buffer: str, pattern: Union[str, Pattern[str]] = DEFAULT_SENTENCE_PATTERN
) -> Tuple[List[str], str]:
    """Split complete sentences off the front of ``buffer``.

    Each sentence ends with the terminator and its following space. Returns
    the sentences and the unfinished remainder.
    """
    if isinstance(pattern, str):
        pattern = re.compile(pattern)
    sentences: List[str] = []
    while True:
        match = pattern.search(buffer)
        if match is None:
            return sentences, buffer
        sentences.append(buffer[: match.end()])
        buffer = buffer[match.end() :]


class TurnBasedVoiceSession(BaseVoiceSession):
    """Request/response voice session.

    One loop task runs listen -> transcribe -> reply -> speak until stopped
    or an error ends it. ``stt`` may be None for a text-only session driven
    by ``send_text``.
    """

    def __init__(
        self,
        stt: Optional[STTEngine],
        synthesizer: SpeechSynthesizer,
        backend: ModelBackend,
        session_manager: Optional[AudioSessionManager] = None,
        system_prompt: str = "",
        settings: Optional[SettingsStore] = None,
        backend_identifier: Optional[BackendIdentifier] = None,
        sentence_pattern: str = DEFAULT_SENTENCE_PATTERN,
    ):
        super().__init__("turn_based")
        self.stt = stt
        self.synthesizer = synthesizer
        self.backend = backend
        self.session_manager = session_manager
        self.system_prompt = system_prompt
        self.settings = settings
        self.backend_identifier = backend_identifier or getattr(
            backend, "identifier", None
        )
        self._sentence_pattern = re.compile(sentence_pattern)
        self._history: List[ChatMessage] = []
        self._loop_task: Optional[asyncio.Task] = None
        self._partial_reply = ""
        self._recorded_working = False

    @property
    def history(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._history)

    async def start(self, system_prompt: str = "") -> None:
        self._ensure_startable()
        if self._loop_task is not None and not self._loop_task.done():
            logger.warning("Turn-based session already running")
            return

        self._seed_history(system_prompt)
        if self.session_manager is not None:
            self.session_manager.configure_for_listening()

        self._started = True
        structured_logger.info(
            "session_started",
            session=self.name,
            session_id=self.session_id,
            backend=self.backend_identifier.value if self.backend_identifier else None,
        )
        if self.stt is None:
            self._update_state(SessionState.IDLE)
            return
        self._loop_task = self._track(self._run_loop(), "turn_loop")

    def _seed_history(self, system_prompt: str = "") -> None:
        prompt = system_prompt or self.system_prompt
        if prompt and not self._history:
            self._history.append(ChatMessage(MessageRole.SYSTEM, prompt))

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        await self._cancel_loop()
        await self._cancel_tasks()
        await self._release("synthesizer", self.synthesizer.close())
        if self.stt is not None:
            await self._release("speech recognizer", self.stt.close())
        await self._release("model backend", self.backend.aclose())
        if self.session_manager is not None:
            self.session_manager.deactivate()

        self._update_state(SessionState.IDLE)
        structured_logger.info(
            "session_stopped", session=self.name, session_id=self.session_id
        )
        self._finish_streams()

    async def _release(self, what: str, closing) -> None:
        try:
            await closing
        except Exception as e:
            logger.warning(f"Releasing {what} failed: {e}")

    async def interrupt(self) -> None:
        """Cut off the reply in progress and go back to listening."""
        if self._stopped:
            return
        phase = self._state.phase
        if phase not in (SessionPhase.PROCESSING, SessionPhase.SPEAKING):
            await self.synthesizer.stop()
            return

        await self._cancel_loop()
        await self.synthesizer.stop()
        if self._partial_reply:
            self._history.append(ChatMessage(MessageRole.ASSISTANT, self._partial_reply))
            self._partial_reply = ""
        logger.info("Reply interrupted")

        if self.stt is None:
            self._update_state(SessionState.IDLE)
            return
        self._loop_task = self._track(self._run_loop(), "turn_loop")

    async def send_text(self, text: str) -> None:
        """Answer typed input as if it had been spoken."""
        text = text.strip()
        if not text:
            return
        self._ensure_startable()

        self._seed_history()
        await self._cancel_loop()
        await self.synthesizer.stop()
        if self.session_manager is not None:
            self.session_manager.configure_for_listening()

        self._started = True
        self._loop_task = self._track(self._typed_turn(text), "typed_turn")

    async def wait_until_idle(self) -> None:
        """Wait for the current loop task, if any, to finish."""
        task = self._loop_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _cancel_loop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _typed_turn(self, text: str) -> None:
        self._emit_transcript(Transcript(text, is_final=True, role=TranscriptRole.USER))
        if not await self._respond(text):
            return
        if self.stt is None:
            self._update_state(SessionState.IDLE)
            return
        await self._run_loop()

    async def _run_loop(self) -> None:
        while True:
            text = await self._listen_for_utterance()
            if text is None:
                return
            if not text:
                logger.debug("Empty transcript, listening again")
                continue
            if not await self._respond(text):
                return

    async def _listen_for_utterance(self) -> Optional[str]:
        """Listen until a final transcript. None means the loop must end."""
        if self.stt is None:
            raise RuntimeError("Voice turns need a speech recognizer")
        if self.session_manager is not None:
            try:
                self.session_manager.configure_for_listening()
            except Exception as e:
                self._fail(audio_error(e, component="audio_session"))
                return None
        self._update_state(SessionState.LISTENING)

        # Subscribe before starting so no early event is missed
        transcripts = self.stt.transcript_stream.subscribe()
        levels = self.stt.audio_level_stream.subscribe()
        level_task = self._track(self._forward_levels(levels), "level_forwarding")
        final: Optional[Transcript] = None

        try:
            try:
                await self.stt.start_listening()
            except Exception as e:
                self._fail(audio_error(e, component="stt"))
                return None

            async with aclosing(transcripts) as stream:
                async for transcript in stream:
                    if transcript.is_final:
                        final = transcript
                        break
                    self._emit_transcript(transcript)
        finally:
            level_task.cancel()
            await self.stt.stop_listening()

        if self.stt.failure is not None:
            self._fail(self.stt.failure)
            return None
        if final is None:
            self._fail(RuntimeError("Speech recognition ended unexpectedly"))
            return None

        text = final.text.strip()
        if text:
            self._emit_transcript(final)
        return text

    async def _forward_levels(self, levels: AsyncIterator[float]) -> None:
        async with aclosing(levels) as stream:
            async for level in stream:
                self._emit_level(level)

    async def _respond(self, text: str) -> bool:
        """Stream and speak a reply to ``text``. False means the loop must end."""
        self._history.append(ChatMessage(MessageRole.USER, text))
        self._update_state(SessionState.PROCESSING)
        self._partial_reply = ""
        buffer = ""
        reply_stream = self.backend.stream_reply(list(self._history))

        try:
            with ProcessingTimer(structured_logger, "reply", self.name):
                async with aclosing(reply_stream) as fragments:
                    async for fragment in fragments:
                        if not fragment:
                            continue
                        if self._state != SessionState.SPEAKING:
                            self._update_state(SessionState.SPEAKING)
                        self._partial_reply += fragment
                        self._emit_transcript(
                            Transcript(
                                self._partial_reply,
                                is_final=False,
                                role=TranscriptRole.ASSISTANT,
                            )
                        )
                        buffer += fragment
                        sentences, buffer = flush_sentences(
                            buffer, self._sentence_pattern
                        )
                        for sentence in sentences:
                            await self.synthesizer.speak(sentence)

                if buffer.strip():
                    if self._state != SessionState.SPEAKING:
                        self._update_state(SessionState.SPEAKING)
                    await self.synthesizer.speak(buffer)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._partial_reply = ""
            component = self.backend_identifier.value if self.backend_identifier else None
            self._fail(translate_error(e, component=component))
            return False

        reply, self._partial_reply = self._partial_reply, ""
        if reply:
            self._history.append(ChatMessage(MessageRole.ASSISTANT, reply))
        self._emit_transcript(
            Transcript(reply, is_final=True, role=TranscriptRole.ASSISTANT)
        )
        self._record_working_backend()
        structured_logger.info(
            "turn_completed",
            session=self.name,
            session_id=self.session_id,
            reply_chars=len(reply),
        )
        return True

    def _record_working_backend(self) -> None:
        if self._recorded_working or self.settings is None:
            return
        if self.backend_identifier is None:
            return
        mark_backend_as_working(self.settings, self.backend_identifier)
        self._recorded_working = True
