"""
Testing utilities for the CarChat voice core.

Scripted stand-ins for model backends, recognizers, synthesizers, the
pyttsx3 engine and the realtime websocket.
"""

from .fakes import (
    FakeConnector,
    FakeSpeechEngine,
    FakeWebSocket,
    RecordingSynthesizer,
    ScriptedBackend,
    ScriptedSTTEngine,
    StreamRecorder,
    wait_for,
)

__all__ = [
    "FakeConnector",
    "FakeSpeechEngine",
    "FakeWebSocket",
    "RecordingSynthesizer",
    "ScriptedBackend",
    "ScriptedSTTEngine",
    "StreamRecorder",
    "wait_for",
]
