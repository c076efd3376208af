"""Real audio implementations using sounddevice for hardware interaction.

These implementations provide actual microphone and speaker functionality
when hardware is available. PortAudio invokes the stream callbacks on its
own thread; captured buffers are marshalled onto the event loop with
``call_soon_threadsafe`` and playback buffers are handed over through a
lock-protected deque.
"""

import asyncio
import logging
import threading
from collections import deque
from typing import Any, Deque, Optional

import numpy as np
import sounddevice as sd

from .audio_config import AudioConfig
from .interfaces import AudioCapture, AudioPlayer

logger = logging.getLogger(__name__)


class RealAudioCapture(AudioCapture):
    """Real audio capture using sounddevice."""

    def __init__(self, device: Optional[int] = None, max_queued_buffers: int = 100):
        self.device = device
        self.max_queued_buffers = max_queued_buffers
        self._is_capturing = False
        self._stream: Optional[sd.InputStream] = None
        self._audio_queue: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sample_rate = AudioConfig.FALLBACK_CAPTURE_RATE

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def native_sample_rate(self) -> int:
        try:
            info = sd.query_devices(self.device, kind="input")
            return int(info["default_samplerate"])
        except Exception as e:
            logger.warning(f"Could not query input device, using fallback rate: {e}")
            return AudioConfig.FALLBACK_CAPTURE_RATE

    def _audio_callback(
        self, indata: np.ndarray, frames: int, time: Any, status: Any
    ) -> None:
        """Callback for audio input stream (PortAudio thread)."""
        if status:
            logger.warning(f"Audio input status: {status}")
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._enqueue, indata.copy())

    def _enqueue(self, chunk: np.ndarray) -> None:
        try:
            self._audio_queue.put_nowait(chunk)
        except asyncio.QueueFull:
            logger.debug("Audio queue full, dropping frame")

    async def start_capture(
        self,
        sample_rate: Optional[int] = None,
        channels: int = AudioConfig.DEFAULT_CHANNELS,
        chunk_size: int = AudioConfig.TAP_BUFFER_SIZE,
    ) -> None:
        """Start real audio capture."""
        if self._is_capturing:
            await self.stop_capture()

        self._loop = asyncio.get_running_loop()
        self._sample_rate = sample_rate or self.native_sample_rate()
        self._audio_queue = asyncio.Queue(maxsize=self.max_queued_buffers)

        try:
            self._stream = sd.InputStream(
                device=self.device,
                channels=channels,
                samplerate=self._sample_rate,
                blocksize=chunk_size,
                callback=self._audio_callback,
                dtype=np.float32,
            )
            self._stream.start()
        except Exception as e:
            logger.error(f"Failed to start audio capture: {e}")
            self._stream = None
            raise

        self._is_capturing = True
        logger.info(
            f"Audio capture started: sample_rate={self._sample_rate}, channels={channels}"
        )

    async def stop_capture(self) -> None:
        """Stop real audio capture."""
        if self._stream:
            self._stream.stop()
            self._stream.close()
            self._stream = None

        if self._is_capturing:
            self._is_capturing = False
            logger.info("Stopped real audio capture")

    async def read_audio_chunk(self) -> Optional[np.ndarray]:
        """Read next audio chunk."""
        if not self._is_capturing:
            return None

        try:
            return await asyncio.wait_for(self._audio_queue.get(), timeout=1.0)
        except asyncio.TimeoutError:
            return None

    def is_capturing(self) -> bool:
        return self._is_capturing


class RealAudioPlayer(AudioPlayer):
    """Continuously running output stream fed from a buffer deque."""

    def __init__(self, device: Optional[int] = None):
        self.device = device
        self._stream: Optional[sd.OutputStream] = None
        self._buffers: Deque[np.ndarray] = deque()
        self._current: Optional[np.ndarray] = None
        self._position = 0
        self._lock = threading.Lock()
        self._sample_rate = AudioConfig.REALTIME_SAMPLE_RATE
        self._is_playing = False

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def _audio_callback(
        self, outdata: np.ndarray, frames: int, time: Any, status: Any
    ) -> None:
        """Fill the device buffer from the queue, padding with silence."""
        if status:
            logger.warning(f"Audio output status: {status}")

        written = 0
        with self._lock:
            while written < frames:
                if self._current is None:
                    if not self._buffers:
                        break
                    self._current = self._buffers.popleft()
                    self._position = 0
                remaining = len(self._current) - self._position
                count = min(remaining, frames - written)
                outdata[written : written + count, 0] = self._current[
                    self._position : self._position + count
                ]
                written += count
                self._position += count
                if self._position >= len(self._current):
                    self._current = None
        outdata[written:].fill(0)

    async def start(
        self,
        sample_rate: int = AudioConfig.REALTIME_SAMPLE_RATE,
        channels: int = AudioConfig.DEFAULT_CHANNELS,
    ) -> None:
        if self._is_playing:
            return
        self._sample_rate = sample_rate
        try:
            self._stream = sd.OutputStream(
                device=self.device,
                channels=1,
                samplerate=sample_rate,
                dtype=np.float32,
                callback=self._audio_callback,
            )
            self._stream.start()
        except Exception as e:
            logger.error(f"Failed to start audio playback: {e}")
            self._stream = None
            raise
        self._is_playing = True
        logger.info(f"Started audio playback, sample_rate={sample_rate}")

    async def stop(self) -> None:
        # abort() discards whatever PortAudio already buffered
        if self._stream:
            self._stream.abort()
            self._stream.close()
            self._stream = None
        with self._lock:
            dropped = len(self._buffers) + (1 if self._current is not None else 0)
            self._buffers.clear()
            self._current = None
            self._position = 0
        if self._is_playing:
            self._is_playing = False
            logger.debug(f"Stopped audio playback, dropped {dropped} buffers")

    def schedule(self, samples: np.ndarray) -> None:
        if not self._is_playing:
            logger.debug("Dropping buffer scheduled on a stopped player")
            return
        with self._lock:
            self._buffers.append(np.asarray(samples, dtype=np.float32).reshape(-1))

    def _has_pending(self) -> bool:
        with self._lock:
            return bool(self._buffers) or self._current is not None

    async def wait_until_drained(self, timeout: Optional[float] = None) -> bool:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._is_playing and self._has_pending():
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(0.02)
        return True

    def is_playing(self) -> bool:
        return self._is_playing
