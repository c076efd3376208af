"""
Base voice session with the shared state machine and push streams.

Both pipeline strategies mutate their state only through ``_update_state``
so every transition is emitted once, in order, and logged.
"""

import asyncio
import logging
from typing import List, Optional

from ..core.exceptions import CarChatError
from ..core.logging import generate_session_id, get_logger
from ..core.protocols import SessionState, Transcript, VoiceSession
from ..core.streams import EventStream

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)


def failure_message(exc: BaseException) -> str:
    """Human-readable message for a session error state."""
    if isinstance(exc, CarChatError):
        return exc.message
    return str(exc) or exc.__class__.__name__


class BaseVoiceSession(VoiceSession):
    """Base session implementation with common functionality."""

    def __init__(self, name: str):
        self.name = name
        self.session_id = generate_session_id()
        self._state = SessionState.IDLE
        self._state_stream: EventStream[SessionState] = EventStream(f"{name}.state")
        self._transcript_stream: EventStream[Transcript] = EventStream(
            f"{name}.transcripts"
        )
        self._audio_level_stream: EventStream[float] = EventStream(
            f"{name}.levels", maxsize=64
        )
        self._tasks: List[asyncio.Task] = []
        self._started = False
        self._stopped = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def state_stream(self) -> EventStream[SessionState]:
        return self._state_stream

    @property
    def transcript_stream(self) -> EventStream[Transcript]:
        return self._transcript_stream

    @property
    def audio_level_stream(self) -> EventStream[float]:
        return self._audio_level_stream

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def _update_state(self, new_state: SessionState) -> None:
        previous = self._state
        self._state = new_state
        structured_logger.log_state_change(
            str(previous), str(new_state), session=self.name, session_id=self.session_id
        )
        self._state_stream.emit(new_state)

    def _fail(self, exc: BaseException) -> None:
        message = failure_message(exc)
        logger.error(f"{self.name} session failed: {exc}")
        self._update_state(SessionState.error(message))

    def _emit_transcript(self, transcript: Transcript) -> None:
        self._transcript_stream.emit(transcript)

    def _emit_level(self, level: float) -> None:
        self._audio_level_stream.emit(max(0.0, min(1.0, level)))

    def _ensure_startable(self) -> None:
        if self._stopped:
            raise RuntimeError(f"{self.name} session was stopped and cannot be reused")

    def _track(self, coro, name: str) -> asyncio.Task:
        """Create a task that is cancelled on teardown."""
        task = asyncio.create_task(coro, name=f"{self.name}.{name}")
        self._tasks.append(task)
        task.add_done_callback(self._forget_task)
        return task

    def _forget_task(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)

    async def _cancel_tasks(self, exclude: Optional[asyncio.Task] = None) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and t is not exclude]
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Task {task.get_name()} ended with {e!r} during teardown")

    def _finish_streams(self) -> None:
        self._state_stream.finish()
        self._transcript_stream.finish()
        self._audio_level_stream.finish()
