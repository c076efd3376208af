"""
Scripted fakes for external collaborators.
"""

import asyncio
import json
import threading
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from carchat.core.llm.providers import BackendIdentifier, ModelBackend
from carchat.core.protocols import ChatMessage, Transcript, TranscriptRole
from carchat.core.streams import EventStream
from carchat.services.stt_service import STTEngine
from carchat.services.tts_service import SpeechSynthesizer

Fragment = Union[str, BaseException]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


class StreamRecorder:
    """Collects everything emitted on a stream after construction."""

    def __init__(self, stream: EventStream):
        self.items: List[Any] = []
        self._iterator = stream.subscribe()
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        async for item in self._iterator:
            self.items.append(item)

    async def close(self) -> None:
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)


class ScriptedBackend(ModelBackend):
    """Model backend replaying one scripted reply per request.

    A reply is a list of fragments; an exception in the list is raised at
    that point of the stream.
    """

    identifier = BackendIdentifier.OPENAI

    def __init__(self, replies: Sequence[Sequence[Fragment]], model: Optional[str] = None):
        super().__init__(model)
        self.replies = [list(reply) for reply in replies]
        self.histories: List[List[ChatMessage]] = []
        self.closed = False

    async def stream_reply(self, history: Sequence[ChatMessage]) -> AsyncIterator[str]:
        self.histories.append(list(history))
        fragments = self.replies.pop(0) if self.replies else []
        for fragment in fragments:
            await asyncio.sleep(0)
            if isinstance(fragment, BaseException):
                raise fragment
            yield fragment

    async def validate_credential(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True


class RecordingSynthesizer(SpeechSynthesizer):
    """Synthesizer that records what it was asked to say.

    With a ``gate`` every ``speak`` blocks until the event is set.
    """

    def __init__(self, gate: Optional[asyncio.Event] = None):
        self.gate = gate
        self.spoken: List[str] = []
        self.stop_count = 0
        self.closed = False
        self._is_speaking = False

    @property
    def is_speaking(self) -> bool:
        return self._is_speaking

    async def speak(self, text: str) -> None:
        self._is_speaking = True
        try:
            self.spoken.append(text)
            if self.gate is not None:
                await self.gate.wait()
        finally:
            self._is_speaking = False

    async def stop(self) -> None:
        self.stop_count += 1
        self._is_speaking = False

    async def close(self) -> None:
        self.closed = True
        await self.stop()


class ScriptedSTTEngine(STTEngine):
    """Recognizer producing one scripted utterance per ``start_listening``.

    Once the script is exhausted it keeps listening without ever producing
    a transcript.
    """

    def __init__(
        self,
        utterances: Sequence[str],
        fail_on_start: Optional[BaseException] = None,
    ):
        super().__init__()
        self.utterances = list(utterances)
        self.fail_on_start = fail_on_start
        self.start_count = 0
        self.stop_count = 0
        self._listening = False

    @property
    def is_listening(self) -> bool:
        return self._listening

    async def start_listening(self) -> None:
        self.start_count += 1
        if self.fail_on_start is not None:
            raise self.fail_on_start
        self._listening = True
        if not self.utterances:
            return

        text = self.utterances.pop(0)
        self.audio_level_stream.emit(0.5)
        await asyncio.sleep(0)
        if text:
            self.transcript_stream.emit(
                Transcript(text[: len(text) // 2], is_final=False, role=TranscriptRole.USER)
            )
        self.transcript_stream.emit(
            Transcript(text, is_final=True, role=TranscriptRole.USER)
        )

    async def stop_listening(self) -> None:
        self.stop_count += 1
        self._listening = False


class FakeSpeechEngine:
    """Stands in for a pyttsx3 engine.

    With ``hang`` set, ``runAndWait`` never returns on its own; only
    ``stop`` releases it.
    """

    def __init__(self, hang: bool = False):
        self.hang = hang
        self.said: List[str] = []
        self.properties: Dict[str, Any] = {}
        self.stop_count = 0
        self._released = threading.Event()

    def setProperty(self, name: str, value: Any) -> None:
        self.properties[name] = value

    def say(self, text: str) -> None:
        self.said.append(text)

    def runAndWait(self) -> None:
        if self.hang:
            self._released.wait(timeout=5.0)

    def stop(self) -> None:
        self.stop_count += 1
        self._released.set()


class FakeWebSocket:
    """In-memory websocket with scripted inbound frames."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    def push(self, event: Union[Dict[str, Any], str, bytes]) -> None:
        if isinstance(event, dict):
            event = json.dumps(event)
        self.incoming.put_nowait(event)

    def fail(self, exc: Optional[BaseException] = None) -> None:
        self.incoming.put_nowait(exc or ConnectionError("connection reset by peer"))

    async def recv(self) -> Any:
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, frame: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(frame))

    async def close(self) -> None:
        self.closed = True

    def sent_types(self) -> List[str]:
        return [event["type"] for event in self.sent]


class FakeConnector:
    """Replacement for ``websockets.connect`` recording each call."""

    def __init__(
        self,
        websocket: Optional[FakeWebSocket] = None,
        error: Optional[BaseException] = None,
    ):
        self.websocket = websocket or FakeWebSocket()
        self.error = error
        self.calls: List[tuple] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.websocket
