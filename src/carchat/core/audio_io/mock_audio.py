"""In-memory and file-backed audio implementations.

These let the voice pipeline run without microphones, speakers or a
platform audio session: tests feed capture buffers directly and inspect
what the player would have made audible, and headless CLI runs read from
and write to sound files.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, FrozenSet, List, Optional

import numpy as np
import soundfile as sf

from ..exceptions import AudioSessionError
from .audio_config import AudioConfig
from .interfaces import AudioCapture, AudioPlayer
from .session_manager import (
    AudioCategory,
    AudioHardware,
    AudioMode,
    AudioRoute,
    CategoryOption,
    InterruptionType,
    RouteChangeReason,
    RouteOutput,
)

logger = logging.getLogger(__name__)


class InMemoryAudioCapture(AudioCapture):
    """Capture fed programmatically with ``feed``."""

    def __init__(self, sample_rate: int = AudioConfig.FALLBACK_CAPTURE_RATE):
        self._native_rate = sample_rate
        self._sample_rate = sample_rate
        self._is_capturing = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self.start_count = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    async def start_capture(
        self,
        sample_rate: Optional[int] = None,
        channels: int = AudioConfig.DEFAULT_CHANNELS,
        chunk_size: int = AudioConfig.TAP_BUFFER_SIZE,
    ) -> None:
        self._sample_rate = sample_rate or self._native_rate
        # Keep fed buffers, drop wake-up markers from an earlier stop
        buffered = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                buffered.append(item)
        for item in buffered:
            self._queue.put_nowait(item)
        self._is_capturing = True
        self.start_count += 1
        logger.info(f"Started in-memory capture at {self._sample_rate} Hz")

    async def stop_capture(self) -> None:
        if not self._is_capturing:
            return
        self._is_capturing = False
        # Wake a reader blocked on the queue
        self._queue.put_nowait(None)
        logger.info("Stopped in-memory capture")

    def feed(self, samples: np.ndarray) -> None:
        """Deliver a buffer as if the device had produced it."""
        self._queue.put_nowait(np.asarray(samples, dtype=np.float32))

    async def read_audio_chunk(self) -> Optional[np.ndarray]:
        if not self._is_capturing and self._queue.empty():
            return None
        return await self._queue.get()

    def is_capturing(self) -> bool:
        return self._is_capturing


class FileAudioCapture(InMemoryAudioCapture):
    """Capture that replays a sound file in tap-sized buffers."""

    def __init__(self, input_file: str, chunk_size: int = AudioConfig.TAP_BUFFER_SIZE):
        super().__init__()
        self.input_file = input_file
        self.chunk_size = chunk_size

    async def start_capture(
        self,
        sample_rate: Optional[int] = None,
        channels: int = AudioConfig.DEFAULT_CHANNELS,
        chunk_size: int = AudioConfig.TAP_BUFFER_SIZE,
    ) -> None:
        if not Path(self.input_file).exists():
            raise FileNotFoundError(f"Input file not found: {self.input_file}")

        audio_data, file_rate = sf.read(self.input_file, dtype="float32")
        self._native_rate = int(file_rate)
        await super().start_capture(self._native_rate, channels, chunk_size)

        for start in range(0, len(audio_data), self.chunk_size):
            self.feed(audio_data[start : start + self.chunk_size])
        logger.info(
            f"Loaded {len(audio_data)} frames from {self.input_file} "
            f"at {self._native_rate} Hz"
        )
        # Replay ends with the file; buffered chunks are still delivered
        await self.stop_capture()


class InMemoryAudioPlayer(AudioPlayer):
    """Player that records what would have been audible.

    With ``auto_drain`` every scheduled buffer counts as heard immediately.
    Without it, buffers stay pending until ``drain()`` so tests can decide
    when the hardware "consumes" them; ``stop`` discards pending buffers.
    """

    def __init__(self, auto_drain: bool = True):
        self.auto_drain = auto_drain
        self.pending: List[np.ndarray] = []
        self.played: List[np.ndarray] = []
        self.dropped: List[np.ndarray] = []
        self._is_playing = False
        self._sample_rate = AudioConfig.REALTIME_SAMPLE_RATE
        self.restart_count = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    async def start(
        self,
        sample_rate: int = AudioConfig.REALTIME_SAMPLE_RATE,
        channels: int = AudioConfig.DEFAULT_CHANNELS,
    ) -> None:
        self._sample_rate = sample_rate
        self._is_playing = True

    async def stop(self) -> None:
        self.dropped.extend(self.pending)
        self.pending = []
        self._is_playing = False

    async def restart(self) -> None:
        self.restart_count += 1
        await super().restart()

    def schedule(self, samples: np.ndarray) -> None:
        if not self._is_playing:
            logger.debug("Dropping buffer scheduled on a stopped player")
            self.dropped.append(samples)
            return
        if self.auto_drain:
            self.played.append(samples)
        else:
            self.pending.append(samples)

    def drain(self) -> None:
        """Mark every pending buffer as heard."""
        self.played.extend(self.pending)
        self.pending = []

    async def wait_until_drained(self, timeout: Optional[float] = None) -> bool:
        if self.auto_drain:
            self.drain()
        return not self.pending

    def is_playing(self) -> bool:
        return self._is_playing


class FileAudioPlayer(InMemoryAudioPlayer):
    """Player that writes everything heard to a sound file on stop."""

    def __init__(self, output_file: str):
        super().__init__(auto_drain=True)
        self.output_file = output_file

    async def stop(self) -> None:
        await super().stop()
        if not self.played:
            return
        output_path = Path(self.output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        sf.write(self.output_file, np.concatenate(self.played), self._sample_rate)
        logger.info(f"Saved audio output to {self.output_file}")


class SimulatedAudioHardware(AudioHardware):
    """In-process audio session handle.

    Used on desktop hosts, which have no category/route API, and in tests.
    Every call is recorded in ``calls``. Route reversion, interruptions and
    route changes can be simulated.
    """

    def __init__(
        self,
        bluetooth_connected: bool = False,
        fail_activation: bool = False,
    ):
        self.bluetooth_connected = bluetooth_connected
        self.fail_activation = fail_activation
        self.category: Optional[AudioCategory] = None
        self.mode: Optional[AudioMode] = None
        self.options: FrozenSet[CategoryOption] = frozenset()
        self.active = False
        self.speaker_override = False
        self.reverted = False
        self.calls: List[tuple] = []
        self._interruption_handlers: List[Callable[[InterruptionType], None]] = []
        self._route_change_handlers: List[Callable[[RouteChangeReason], None]] = []

    def set_category(
        self,
        category: AudioCategory,
        mode: AudioMode,
        options: FrozenSet[CategoryOption],
    ) -> None:
        self.calls.append(("set_category", category, mode, options))
        self.category = category
        self.mode = mode
        self.options = frozenset(options)

    def set_active(self, active: bool) -> None:
        self.calls.append(("set_active", active))
        if active and self.fail_activation:
            raise AudioSessionError(
                "Session activation failed", component="simulated_hardware"
            )
        self.active = active
        if not active:
            self.speaker_override = False
            self.reverted = False

    def override_output_to_speaker(self, enabled: bool) -> None:
        self.calls.append(("override_output_to_speaker", enabled))
        self.speaker_override = enabled
        if enabled:
            self.reverted = False

    def current_route(self) -> AudioRoute:
        if not self.active:
            return AudioRoute(RouteOutput.NONE)
        if self.category is AudioCategory.PLAYBACK:
            if self.bluetooth_connected:
                return AudioRoute(RouteOutput.BLUETOOTH)
            return AudioRoute(RouteOutput.SPEAKER)
        if self.reverted:
            return AudioRoute(RouteOutput.RECEIVER)
        if self.speaker_override:
            return AudioRoute(RouteOutput.SPEAKER)
        if self.bluetooth_connected and CategoryOption.ALLOW_BLUETOOTH_HFP in self.options:
            return AudioRoute(RouteOutput.BLUETOOTH, input_name="Bluetooth HFP")
        if CategoryOption.DEFAULT_TO_SPEAKER in self.options:
            return AudioRoute(RouteOutput.SPEAKER)
        return AudioRoute(RouteOutput.RECEIVER)

    def add_interruption_handler(self, handler: Callable[[InterruptionType], None]) -> None:
        self._interruption_handlers.append(handler)

    def add_route_change_handler(self, handler: Callable[[RouteChangeReason], None]) -> None:
        self._route_change_handlers.append(handler)

    # Simulation hooks

    def simulate_silent_revert(self) -> None:
        """Drop to the earpiece without notifying anyone."""
        self.reverted = True

    def simulate_interruption(self, interruption: InterruptionType) -> None:
        if interruption is InterruptionType.BEGAN:
            self.active = False
        for handler in list(self._interruption_handlers):
            handler(interruption)

    def simulate_route_change(
        self,
        reason: RouteChangeReason,
        bluetooth_connected: Optional[bool] = None,
    ) -> None:
        if bluetooth_connected is not None:
            self.bluetooth_connected = bluetooth_connected
        for handler in list(self._route_change_handlers):
            handler(reason)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)
