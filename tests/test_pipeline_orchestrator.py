"""
Tests for the turn-based voice session.
"""

import asyncio

import pytest
from testing_utilities import (
    RecordingSynthesizer,
    ScriptedBackend,
    ScriptedSTTEngine,
    StreamRecorder,
    wait_for,
)

from carchat.core.audio_io import (
    AudioSessionManager,
    InterruptionType,
    SimulatedAudioHardware,
)
from carchat.core.exceptions import RateLimitedError
from carchat.core.llm import BackendIdentifier
from carchat.core.protocols import (
    ChatMessage,
    MessageRole,
    SessionPhase,
    SessionState,
    Transcript,
    TranscriptRole,
)
from carchat.services import TurnBasedVoiceSession, flush_sentences


class CallInterruptedSynthesizer(RecordingSynthesizer):
    """Loses the audio session to a phone call after speaking."""

    def __init__(self, hardware: SimulatedAudioHardware):
        super().__init__()
        self.hardware = hardware

    async def speak(self, text: str) -> None:
        await super().speak(text)
        self.hardware.fail_activation = True
        self.hardware.simulate_interruption(InterruptionType.BEGAN)


class TestFlushSentences:
    """Test sentence splitting of a streaming reply."""

    def test_flushes_every_complete_sentence(self) -> None:
        """All terminated sentences are split off, the rest is kept."""
        sentences, remainder = flush_sentences("Hello world. How are you? Good.")
        assert sentences == ["Hello world. ", "How are you? "]
        assert remainder == "Good."

    def test_terminator_needs_following_space(self) -> None:
        """Decimal points and trailing terminators do not end a sentence."""
        sentences, remainder = flush_sentences("It is 3.5 km away!")
        assert sentences == []
        assert remainder == "It is 3.5 km away!"

    def test_custom_pattern(self) -> None:
        """Callers can split on their own terminators."""
        sentences, remainder = flush_sentences("first; second; third", r"; ")
        assert sentences == ["first; ", "second; "]
        assert remainder == "third"


class TestTurnBasedVoiceSession:
    """Test the listen, reply and speak loop."""

    @pytest.mark.asyncio
    async def test_voice_turn(self, settings, session_manager) -> None:
        """A spoken question is answered sentence by sentence."""
        stt = ScriptedSTTEngine(["How are you"])
        backend = ScriptedBackend([["I am fine. ", "Thanks for asking! ", "Bye"]])
        synthesizer = RecordingSynthesizer()
        session = TurnBasedVoiceSession(
            stt,
            synthesizer,
            backend,
            session_manager=session_manager,
            settings=settings,
        )
        states = StreamRecorder(session.state_stream)
        transcripts = StreamRecorder(session.transcript_stream)
        levels = StreamRecorder(session.audio_level_stream)

        await session.start("You are a co-driver.")
        await wait_for(lambda: len(states.items) >= 4)

        assert [s.phase for s in states.items[:4]] == [
            SessionPhase.LISTENING,
            SessionPhase.PROCESSING,
            SessionPhase.SPEAKING,
            SessionPhase.LISTENING,
        ]
        assert synthesizer.spoken == ["I am fine. ", "Thanks for asking! ", "Bye"]
        assert session.history == (
            ChatMessage(MessageRole.SYSTEM, "You are a co-driver."),
            ChatMessage(MessageRole.USER, "How are you"),
            ChatMessage(MessageRole.ASSISTANT, "I am fine. Thanks for asking! Bye"),
        )
        assert backend.histories[0] == list(session.history[:2])
        assert settings.last_working_backend is BackendIdentifier.OPENAI
        assert stt.start_count == 2

        await wait_for(lambda: len(transcripts.items) >= 6)
        assert transcripts.items[0] == Transcript(
            "How a", is_final=False, role=TranscriptRole.USER
        )
        assert transcripts.items[1] == Transcript(
            "How are you", is_final=True, role=TranscriptRole.USER
        )
        assert transcripts.items[-1] == Transcript(
            "I am fine. Thanks for asking! Bye",
            is_final=True,
            role=TranscriptRole.ASSISTANT,
        )
        assert 0.5 in levels.items

        await session.stop()
        for recorder in (states, transcripts, levels):
            await recorder.close()

    @pytest.mark.asyncio
    async def test_empty_transcript_listens_again(self) -> None:
        """An empty utterance never reaches the model."""
        stt = ScriptedSTTEngine(["", "Hello"])
        backend = ScriptedBackend([["Hi there."]])
        synthesizer = RecordingSynthesizer()
        session = TurnBasedVoiceSession(stt, synthesizer, backend)

        await session.start()
        await wait_for(lambda: synthesizer.spoken == ["Hi there."])

        assert len(backend.histories) == 1
        assert backend.histories[0] == [ChatMessage(MessageRole.USER, "Hello")]
        await session.stop()

    @pytest.mark.asyncio
    async def test_model_error_ends_loop(self, settings) -> None:
        """A failing reply stream puts the session in the error state."""
        stt = ScriptedSTTEngine(["Where am I", "Still there?"])
        backend = ScriptedBackend([["Partial. ", RateLimitedError()]])
        synthesizer = RecordingSynthesizer()
        session = TurnBasedVoiceSession(stt, synthesizer, backend, settings=settings)

        await session.start()
        await wait_for(lambda: session.state.is_error)
        await session.wait_until_idle()

        assert session.state == SessionState.error("Rate limited. Please wait a moment.")
        assert synthesizer.spoken == ["Partial. "]
        assert [m.role for m in session.history] == [MessageRole.USER]
        assert settings.last_working_backend is None
        assert stt.start_count == 1
        await session.stop()

    @pytest.mark.asyncio
    async def test_recognizer_start_failure(self) -> None:
        """A recognizer that cannot start fails the session."""
        stt = ScriptedSTTEngine([], fail_on_start=OSError("mic busy"))
        session = TurnBasedVoiceSession(stt, RecordingSynthesizer(), ScriptedBackend([]))

        await session.start()
        await wait_for(lambda: session.state.is_error)

        assert session.state.message == "Audio error: mic busy"
        assert stt.stop_count == 1
        await session.stop()

    @pytest.mark.asyncio
    async def test_audio_session_loss_fails_session(self) -> None:
        """A session that cannot be reactivated after a call ends in error."""
        hardware = SimulatedAudioHardware()
        session_manager = AudioSessionManager(hardware, recheck_delay=0.01)
        stt = ScriptedSTTEngine(["Call home", "Hello?"])
        session = TurnBasedVoiceSession(
            stt,
            CallInterruptedSynthesizer(hardware),
            ScriptedBackend([["Calling home."]]),
            session_manager=session_manager,
        )
        states = StreamRecorder(session.state_stream)

        await session.start()
        await wait_for(lambda: session.state.is_error)
        await session.wait_until_idle()

        assert session.state == SessionState.error("Session activation failed")
        assert [s.phase for s in states.items] == [
            SessionPhase.LISTENING,
            SessionPhase.PROCESSING,
            SessionPhase.SPEAKING,
            SessionPhase.ERROR,
        ]
        assert stt.start_count == 1
        assert session.history[-1] == ChatMessage(MessageRole.ASSISTANT, "Calling home.")
        await states.close()
        await session.stop()

    @pytest.mark.asyncio
    async def test_voice_turn_needs_recognizer(self) -> None:
        """Listening without a recognizer is refused outright."""
        session = TurnBasedVoiceSession(None, RecordingSynthesizer(), ScriptedBackend([]))
        with pytest.raises(RuntimeError):
            await session._listen_for_utterance()
        assert session.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_send_text_without_recognizer(self, settings) -> None:
        """Typed turns work on a session with no recognizer."""
        backend = ScriptedBackend([["Sunny and warm."], ["You're welcome."]])
        synthesizer = RecordingSynthesizer()
        session = TurnBasedVoiceSession(
            None, synthesizer, backend, system_prompt="Be brief.", settings=settings
        )
        transcripts = StreamRecorder(session.transcript_stream)

        await session.start()
        assert session.state == SessionState.IDLE

        await session.send_text("  What's the weather?  ")
        await session.wait_until_idle()
        assert session.state == SessionState.IDLE
        assert session.history[-1] == ChatMessage(MessageRole.ASSISTANT, "Sunny and warm.")

        settings.last_working_backend = BackendIdentifier.GEMINI
        await session.send_text("Thanks")
        await session.wait_until_idle()

        assert [m.role for m in session.history] == [
            MessageRole.SYSTEM,
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.USER,
            MessageRole.ASSISTANT,
        ]
        assert session.history[1].content == "What's the weather?"
        # Recorded once per session
        assert settings.last_working_backend is BackendIdentifier.GEMINI

        await wait_for(lambda: len(transcripts.items) >= 3)
        assert transcripts.items[0] == Transcript(
            "What's the weather?", is_final=True, role=TranscriptRole.USER
        )
        await transcripts.close()
        await session.stop()

    @pytest.mark.asyncio
    async def test_empty_reply_is_never_spoken(self) -> None:
        """A reply with no text goes from processing straight back."""
        synthesizer = RecordingSynthesizer()
        session = TurnBasedVoiceSession(None, synthesizer, ScriptedBackend([[""]]))
        states = StreamRecorder(session.state_stream)

        await session.start()
        await session.send_text("Anything new?")
        await session.wait_until_idle()
        await wait_for(lambda: len(states.items) >= 3)

        assert [s.phase for s in states.items] == [
            SessionPhase.IDLE,
            SessionPhase.PROCESSING,
            SessionPhase.IDLE,
        ]
        assert synthesizer.spoken == []
        assert session.history[-1] == ChatMessage(MessageRole.USER, "Anything new?")
        await states.close()
        await session.stop()

    @pytest.mark.asyncio
    async def test_blank_text_is_ignored(self) -> None:
        """Whitespace-only input does nothing."""
        backend = ScriptedBackend([])
        session = TurnBasedVoiceSession(None, RecordingSynthesizer(), backend)
        await session.send_text("   ")
        await session.wait_until_idle()
        assert backend.histories == []

    @pytest.mark.asyncio
    async def test_interrupt_keeps_partial_reply(self) -> None:
        """Interrupting mid-reply keeps what was said and listens again."""
        gate = asyncio.Event()
        stt = ScriptedSTTEngine(["Tell me a story"])
        backend = ScriptedBackend([["Once upon a time. ", "There was a car. ", "The end."]])
        synthesizer = RecordingSynthesizer(gate=gate)
        session = TurnBasedVoiceSession(stt, synthesizer, backend)

        await session.start()
        await wait_for(lambda: synthesizer.spoken == ["Once upon a time. "])
        assert session.state == SessionState.SPEAKING

        await session.interrupt()
        await wait_for(lambda: session.state == SessionState.LISTENING)

        assert synthesizer.stop_count == 1
        assert synthesizer.spoken == ["Once upon a time. "]
        assert session.history[-1] == ChatMessage(
            MessageRole.ASSISTANT, "Once upon a time. "
        )
        assert stt.start_count == 2
        await session.stop()

    @pytest.mark.asyncio
    async def test_interrupt_while_listening_only_stops_speech(self) -> None:
        """Outside a reply, interrupt just silences the synthesizer."""
        stt = ScriptedSTTEngine([])
        synthesizer = RecordingSynthesizer()
        session = TurnBasedVoiceSession(stt, synthesizer, ScriptedBackend([]))

        await session.start()
        await wait_for(lambda: session.state == SessionState.LISTENING)
        await session.interrupt()

        assert synthesizer.stop_count == 1
        assert session.state == SessionState.LISTENING
        assert stt.start_count == 1
        await session.stop()

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, session_manager) -> None:
        """Stopping closes collaborators, ends streams and is idempotent."""
        stt = ScriptedSTTEngine([])
        synthesizer = RecordingSynthesizer()
        backend = ScriptedBackend([])
        session = TurnBasedVoiceSession(
            stt, synthesizer, backend, session_manager=session_manager
        )

        await session.start()
        await wait_for(lambda: session.state == SessionState.LISTENING)
        assert session_manager.is_active

        await session.stop()
        await session.stop()

        assert session.state == SessionState.IDLE
        assert synthesizer.closed
        assert backend.closed
        assert not stt.is_listening
        assert not session_manager.is_active
        assert session.state_stream.is_finished
        with pytest.raises(RuntimeError):
            await session.start()

    @pytest.mark.asyncio
    async def test_explicit_backend_identifier_is_recorded(self, settings) -> None:
        """The resolved backend, not the client class, is marked working."""
        session = TurnBasedVoiceSession(
            None,
            RecordingSynthesizer(),
            ScriptedBackend([["Done."]]),
            settings=settings,
            backend_identifier=BackendIdentifier.GROK,
        )
        await session.send_text("Go")
        await session.wait_until_idle()
        assert settings.last_working_backend is BackendIdentifier.GROK
