"""Factory for creating audio components based on configuration.

This allows switching between in-memory, file-backed and real audio
implementations via environment variables or configuration files.
"""

import logging
import os
from typing import Optional

from .interfaces import AudioCapture, AudioPlayer
from .mock_audio import (
    FileAudioCapture,
    FileAudioPlayer,
    InMemoryAudioCapture,
    InMemoryAudioPlayer,
    SimulatedAudioHardware,
)
from .session_manager import AudioHardware

logger = logging.getLogger(__name__)

MOCK_AUDIO_ENV = "CARCHAT_USE_MOCK_AUDIO"


def _use_mocks(use_mocks: Optional[bool]) -> bool:
    if use_mocks is None:
        return os.getenv(MOCK_AUDIO_ENV, "false").lower() == "true"
    return use_mocks


class AudioComponentFactory:
    """Factory for creating audio components.

    The sounddevice implementations are imported only when requested, so
    hosts without PortAudio can still run on the in-memory components.
    """

    @staticmethod
    def create_audio_capture(
        use_mocks: Optional[bool] = None,
        input_file: Optional[str] = None,
        device: Optional[int] = None,
    ) -> AudioCapture:
        """Create audio capture component.

        Args:
            use_mocks: If True, use in-memory capture. If None, check environment.
            input_file: Sound file to replay instead of a microphone.
            device: sounddevice input device index for real capture.
        """
        if input_file:
            logger.info(f"Using file audio capture with input file: {input_file}")
            return FileAudioCapture(input_file)

        if _use_mocks(use_mocks):
            logger.info("Using in-memory audio capture")
            return InMemoryAudioCapture()

        from .real_audio import RealAudioCapture

        logger.info("Using real audio capture")
        return RealAudioCapture(device=device)

    @staticmethod
    def create_audio_player(
        use_mocks: Optional[bool] = None,
        output_file: Optional[str] = None,
        device: Optional[int] = None,
    ) -> AudioPlayer:
        """Create audio player component.

        Args:
            use_mocks: If True, use in-memory playback. If None, check environment.
            output_file: Sound file receiving everything played.
            device: sounddevice output device index for real playback.
        """
        if output_file:
            logger.info(f"Using file audio player with output file: {output_file}")
            return FileAudioPlayer(output_file)

        if _use_mocks(use_mocks):
            logger.info("Using in-memory audio player")
            return InMemoryAudioPlayer()

        from .real_audio import RealAudioPlayer

        logger.info("Using real audio player")
        return RealAudioPlayer(device=device)

    @staticmethod
    def create_hardware(bluetooth_connected: bool = False) -> AudioHardware:
        """Create the audio session handle.

        Desktop hosts expose no category or route API, so the simulated
        handle is the only implementation shipped with the core.
        """
        return SimulatedAudioHardware(bluetooth_connected=bluetooth_connected)
