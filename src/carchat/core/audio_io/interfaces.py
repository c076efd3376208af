"""Audio I/O interfaces for dependency injection and testing.

These interfaces allow swapping between real hardware and in-memory
implementations without changing the calling code.
"""

from abc import ABC, abstractmethod
from typing import AsyncGenerator, Optional

import numpy as np

from .audio_config import AudioConfig


class AudioCapture(ABC):
    """Captures audio from an input device (microphone).

    Buffers are delivered in the device's native format: float32 frames,
    shaped ``(frames,)`` or ``(frames, channels)``, at ``sample_rate``.
    """

    @abstractmethod
    async def start_capture(
        self,
        sample_rate: Optional[int] = None,
        channels: int = AudioConfig.DEFAULT_CHANNELS,
        chunk_size: int = AudioConfig.TAP_BUFFER_SIZE,
    ) -> None:
        """Start capturing. ``sample_rate=None`` uses the device's native rate."""
        pass

    @abstractmethod
    async def stop_capture(self) -> None:
        """Stop capturing audio. Safe to call when not capturing."""
        pass

    @abstractmethod
    async def read_audio_chunk(self) -> Optional[np.ndarray]:
        """Read the next chunk of audio data."""
        pass

    async def capture_stream(self) -> AsyncGenerator[np.ndarray, None]:
        """Stream audio chunks until capture stops and its buffers run out."""
        while True:
            chunk = await self.read_audio_chunk()
            if chunk is None:
                if not self.is_capturing():
                    break
                continue
            yield chunk

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        """Sample rate of delivered buffers."""
        pass

    @abstractmethod
    def is_capturing(self) -> bool:
        """Check if currently capturing audio."""
        pass


class AudioPlayer(ABC):
    """Continuously running player fed with scheduled buffers.

    ``schedule`` never blocks, so buffers keep their arrival order. ``stop``
    discards everything not yet heard; ``restart`` (stop then start) is how
    queued playback is cleared for barge-in.
    """

    @abstractmethod
    async def start(
        self,
        sample_rate: int = AudioConfig.REALTIME_SAMPLE_RATE,
        channels: int = AudioConfig.DEFAULT_CHANNELS,
    ) -> None:
        """Start the output stream."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the output stream and drop all pending buffers."""
        pass

    @abstractmethod
    def schedule(self, samples: np.ndarray) -> None:
        """Queue float32 mono samples behind anything already scheduled."""
        pass

    @abstractmethod
    async def wait_until_drained(self, timeout: Optional[float] = None) -> bool:
        """Wait until every scheduled buffer was played or dropped.

        Returns False if the timeout expired first.
        """
        pass

    @abstractmethod
    def is_playing(self) -> bool:
        """Check if the output stream is running."""
        pass

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        pass

    async def restart(self) -> None:
        """Drop queued playback and keep the player running."""
        await self.stop()
        await self.start(self.sample_rate)
