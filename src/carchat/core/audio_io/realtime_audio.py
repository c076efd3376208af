"""Audio plumbing for full-duplex realtime sessions.

Capture buffers arrive in the device's native format; each one is metered,
downmixed, resampled to 24 kHz and PCM16-encoded before being handed to the
transport. Inbound PCM16 is decoded and scheduled on a player that keeps
running for the whole session.
"""

import asyncio
import logging
from typing import Callable, Optional

from ..streams import EventStream
from .audio_config import AudioConfig
from .audio_utils import convert_for_realtime, pcm16_to_float, rms_level
from .interfaces import AudioCapture, AudioPlayer

logger = logging.getLogger(__name__)


class RealtimeAudioIO:
    """Capture-to-wire and wire-to-speaker path of a realtime session."""

    def __init__(
        self,
        capture: AudioCapture,
        player: AudioPlayer,
        sample_rate: int = AudioConfig.REALTIME_SAMPLE_RATE,
        level_gain: float = AudioConfig.LEVEL_GAIN,
        chunk_size: int = AudioConfig.TAP_BUFFER_SIZE,
    ):
        self.capture = capture
        self.player = player
        self.sample_rate = sample_rate
        self.level_gain = level_gain
        self.chunk_size = chunk_size
        self.audio_levels: EventStream[float] = EventStream("realtime_levels", maxsize=32)
        self._capture_task: Optional[asyncio.Task] = None

    @property
    def is_capturing(self) -> bool:
        return self._capture_task is not None and not self._capture_task.done()

    async def start_capture(self, on_chunk: Callable[[bytes], None]) -> None:
        """Start playback and capture; ``on_chunk`` receives PCM16 at 24 kHz."""
        await self.player.start(self.sample_rate)
        await self.capture.start_capture(chunk_size=self.chunk_size)
        self._capture_task = asyncio.create_task(
            self._pump_capture(on_chunk), name="realtime_capture"
        )
        logger.info(
            f"Realtime audio started: capture {self.capture.sample_rate} Hz -> "
            f"{self.sample_rate} Hz PCM16"
        )

    async def _pump_capture(self, on_chunk: Callable[[bytes], None]) -> None:
        async for chunk in self.capture.capture_stream():
            if chunk.size == 0:
                continue
            self.audio_levels.emit(rms_level(chunk, self.level_gain))
            on_chunk(
                convert_for_realtime(chunk, self.capture.sample_rate, self.sample_rate)
            )

    def play_audio_chunk(self, data: bytes) -> None:
        """Decode PCM16 and queue it behind earlier chunks."""
        samples = pcm16_to_float(data)
        if samples.size == 0:
            return
        self.player.schedule(samples)

    async def clear_playback_queue(self) -> None:
        """Drop everything queued; later chunks play normally."""
        await self.player.restart()

    async def stop_capture(self) -> None:
        """Stop capture, the pump task and the player."""
        task, self._capture_task = self._capture_task, None
        await self.capture.stop_capture()
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.player.stop()
        self.audio_levels.emit(0.0)
