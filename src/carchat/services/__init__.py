"""Voice services package.

Speech recognition, speech synthesis and the two voice session strategies
built on top of them.
"""

from .base_session import BaseVoiceSession
from .pipeline_orchestrator import TurnBasedVoiceSession, flush_sentences
from .realtime_session import (
    RealtimeVoiceSession,
    build_realtime_url,
    build_session_update,
    realtime_route,
)
from .session_registry import SessionRegistry
from .stt_service import (
    EndpointAction,
    SpeechEndpointingConfig,
    SpeechPaceProfile,
    STTEngine,
    VoiceEndpointDetector,
    WhisperSTTEngine,
)
from .tts_service import (
    ElevenLabsModel,
    ElevenLabsTTS,
    OpenAITTS,
    SpeechSynthesizer,
    SystemTTS,
    TTSEngineType,
    create_synthesizer,
)

__all__ = [
    # Sessions
    "BaseVoiceSession",
    "TurnBasedVoiceSession",
    "RealtimeVoiceSession",
    "SessionRegistry",
    "flush_sentences",
    "realtime_route",
    "build_realtime_url",
    "build_session_update",
    # Recognition
    "STTEngine",
    "WhisperSTTEngine",
    "VoiceEndpointDetector",
    "SpeechEndpointingConfig",
    "SpeechPaceProfile",
    "EndpointAction",
    # Synthesis
    "SpeechSynthesizer",
    "SystemTTS",
    "OpenAITTS",
    "ElevenLabsTTS",
    "ElevenLabsModel",
    "TTSEngineType",
    "create_synthesizer",
]
