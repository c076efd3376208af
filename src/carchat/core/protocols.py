"""
Protocols and data types shared by the voice sessions.

Defines the session state, transcript and chat message types plus the
contract every voice session implements, so callers can drive a turn-based
or realtime session without knowing which one they hold.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, ClassVar, Optional

if TYPE_CHECKING:
    from .streams import EventStream


class SessionPhase(Enum):
    """Phases of a spoken turn."""

    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


@dataclass(frozen=True)
class SessionState:
    """Current state of a voice session.

    ``message`` is only set for the error phase.
    """

    phase: SessionPhase
    message: Optional[str] = None

    IDLE: ClassVar["SessionState"]
    LISTENING: ClassVar["SessionState"]
    PROCESSING: ClassVar["SessionState"]
    SPEAKING: ClassVar["SessionState"]

    @classmethod
    def error(cls, message: str) -> "SessionState":
        return cls(SessionPhase.ERROR, message)

    @property
    def is_active(self) -> bool:
        return self.phase in (
            SessionPhase.LISTENING,
            SessionPhase.PROCESSING,
            SessionPhase.SPEAKING,
        )

    @property
    def is_error(self) -> bool:
        return self.phase is SessionPhase.ERROR

    def __str__(self) -> str:
        if self.message:
            return f"{self.phase.value}({self.message})"
        return self.phase.value


SessionState.IDLE = SessionState(SessionPhase.IDLE)
SessionState.LISTENING = SessionState(SessionPhase.LISTENING)
SessionState.PROCESSING = SessionState(SessionPhase.PROCESSING)
SessionState.SPEAKING = SessionState(SessionPhase.SPEAKING)


class TranscriptRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Transcript:
    """A piece of recognized or generated text.

    A final transcript for a role closes that utterance.
    """

    text: str
    is_final: bool
    role: TranscriptRole


class MessageRole(Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    """One entry of the conversation history sent to a model backend."""

    role: MessageRole
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}


class VoiceSession(ABC):
    """Contract shared by the turn-based and realtime voice sessions.

    A session object is created per conversation attempt and is not reused
    after ``stop()``.
    """

    @property
    @abstractmethod
    def state(self) -> SessionState:
        """Current session state."""

    @property
    @abstractmethod
    def state_stream(self) -> "EventStream[SessionState]":
        """Push stream of state transitions."""

    @property
    @abstractmethod
    def transcript_stream(self) -> "EventStream[Transcript]":
        """Push stream of user and assistant transcripts."""

    @property
    @abstractmethod
    def audio_level_stream(self) -> "EventStream[float]":
        """Push stream of input levels in the range 0..1."""

    @abstractmethod
    async def start(self, system_prompt: str) -> None:
        """Start the session. May raise on setup failure."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the session. Always succeeds and is idempotent."""

    @abstractmethod
    async def interrupt(self) -> None:
        """Cancel in-flight speech and return to listening."""

    def states(self) -> AsyncIterator[SessionState]:
        return self.state_stream.subscribe()

    def transcripts(self) -> AsyncIterator[Transcript]:
        return self.transcript_stream.subscribe()
