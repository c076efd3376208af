"""
Audio session management.

The audio session manager owns the single hardware session handle and keeps
capture and playback routing consistent across listening, speaking and
full-duplex phases. The handle is passed in explicitly; nothing here is a
process-wide singleton.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, FrozenSet, Optional, Union

from ..exceptions import AudioSessionError
from ..streams import EventStream

logger = logging.getLogger(__name__)

LISTENING_RECHECK_DELAY_S = 0.25


class OutputMode(Enum):
    """User-selected output routing."""

    AUTOMATIC = "automatic"
    SPEAKERPHONE = "speakerphone"

    @classmethod
    def default(cls) -> "OutputMode":
        return cls.SPEAKERPHONE

    @property
    def display_name(self) -> str:
        if self is OutputMode.AUTOMATIC:
            return "Auto Route"
        return "Speakerphone"

    @property
    def subtitle(self) -> str:
        if self is OutputMode.AUTOMATIC:
            return "Let the system choose Bluetooth, CarPlay or the speaker"
        return "Always use the loudspeaker and built-in microphone"


class AudioCategory(Enum):
    PLAY_AND_RECORD = "playAndRecord"
    PLAYBACK = "playback"


class AudioMode(Enum):
    DEFAULT = "default"
    VOICE_CHAT = "voiceChat"
    SPOKEN_AUDIO = "spokenAudio"


class CategoryOption(Enum):
    ALLOW_BLUETOOTH_HFP = "allowBluetooth"
    ALLOW_BLUETOOTH_A2DP = "allowBluetoothA2DP"
    DEFAULT_TO_SPEAKER = "defaultToSpeaker"
    DUCK_OTHERS = "duckOthers"


class RouteOutput(Enum):
    NONE = "none"
    SPEAKER = "speaker"
    RECEIVER = "receiver"
    BLUETOOTH = "bluetooth"
    HEADPHONES = "headphones"
    CAR_AUDIO = "carAudio"


class InterruptionType(Enum):
    BEGAN = "began"
    ENDED = "ended"


class RouteChangeReason(Enum):
    NEW_DEVICE_AVAILABLE = "newDeviceAvailable"
    OLD_DEVICE_UNAVAILABLE = "oldDeviceUnavailable"
    CATEGORY_CHANGE = "categoryChange"
    OVERRIDE = "override"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AudioRoute:
    output: RouteOutput
    input_name: str = "Built-In Microphone"

    @property
    def is_bluetooth(self) -> bool:
        return self.output is RouteOutput.BLUETOOTH


@dataclass(frozen=True)
class SessionConfiguration:
    """Category, mode and options applied to the hardware together."""

    category: AudioCategory
    mode: AudioMode
    options: FrozenSet[CategoryOption]
    force_speaker: bool = False


class AudioHardware(ABC):
    """Contract of the platform audio session handle."""

    @abstractmethod
    def set_category(
        self,
        category: AudioCategory,
        mode: AudioMode,
        options: FrozenSet[CategoryOption],
    ) -> None:
        """Apply category, mode and options. May raise AudioSessionError."""

    @abstractmethod
    def set_active(self, active: bool) -> None:
        """Activate or release the session."""

    @abstractmethod
    def override_output_to_speaker(self, enabled: bool) -> None:
        """Force (or stop forcing) output to the loudspeaker."""

    @abstractmethod
    def current_route(self) -> AudioRoute:
        """Currently active output route."""

    @abstractmethod
    def add_interruption_handler(self, handler: Callable[[InterruptionType], None]) -> None:
        """Register a callback for interruptions (calls, alarms)."""

    @abstractmethod
    def add_route_change_handler(self, handler: Callable[[RouteChangeReason], None]) -> None:
        """Register a callback for route changes."""


OutputModeSource = Union[OutputMode, Callable[[], OutputMode]]


class AudioSessionManager:
    """Configures the hardware session for each pipeline phase."""

    def __init__(
        self,
        hardware: AudioHardware,
        output_mode: OutputModeSource = OutputMode.SPEAKERPHONE,
        recheck_delay: float = LISTENING_RECHECK_DELAY_S,
    ):
        self.hardware = hardware
        self._output_mode = output_mode
        self.recheck_delay = recheck_delay

        self.interruptions: EventStream[InterruptionType] = EventStream("interruptions")
        self.route_changes: EventStream[RouteChangeReason] = EventStream("route_changes")

        self._applied: Optional[SessionConfiguration] = None
        self._is_active = False
        self._recheck_handle: Optional[asyncio.TimerHandle] = None

        hardware.add_interruption_handler(self._handle_interruption)
        hardware.add_route_change_handler(self._handle_route_change)

    @property
    def output_mode(self) -> OutputMode:
        if callable(self._output_mode):
            return self._output_mode()
        return self._output_mode

    @property
    def is_active(self) -> bool:
        return self._is_active

    @property
    def applied_configuration(self) -> Optional[SessionConfiguration]:
        return self._applied

    @property
    def has_pending_recheck(self) -> bool:
        return self._recheck_handle is not None and not self._recheck_handle.cancelled()

    @property
    def is_bluetooth_connected(self) -> bool:
        return self.hardware.current_route().is_bluetooth

    def listening_configuration(self) -> SessionConfiguration:
        """Play-and-record configuration for the current output mode."""
        if self.output_mode is OutputMode.AUTOMATIC:
            return SessionConfiguration(
                category=AudioCategory.PLAY_AND_RECORD,
                mode=AudioMode.DEFAULT,
                options=frozenset(
                    {
                        CategoryOption.ALLOW_BLUETOOTH_HFP,
                        CategoryOption.ALLOW_BLUETOOTH_A2DP,
                        CategoryOption.DEFAULT_TO_SPEAKER,
                        CategoryOption.DUCK_OTHERS,
                    }
                ),
            )
        return SessionConfiguration(
            category=AudioCategory.PLAY_AND_RECORD,
            mode=AudioMode.VOICE_CHAT,
            options=frozenset(
                {CategoryOption.DEFAULT_TO_SPEAKER, CategoryOption.DUCK_OTHERS}
            ),
            force_speaker=True,
        )

    @staticmethod
    def speaking_configuration(for_synthesizer: bool = False) -> SessionConfiguration:
        # Playback-only category never routes to the earpiece
        return SessionConfiguration(
            category=AudioCategory.PLAYBACK,
            mode=AudioMode.SPOKEN_AUDIO if for_synthesizer else AudioMode.DEFAULT,
            options=frozenset({CategoryOption.DUCK_OTHERS}),
        )

    def configure_for_listening(self) -> None:
        """Route capture and playback for listening. Idempotent."""
        self._apply(self.listening_configuration())
        self._schedule_speaker_recheck()

    def configure_for_duplex(self) -> None:
        """Full-duplex realtime sessions use the listening configuration."""
        self.configure_for_listening()

    def configure_for_speaking(self, for_synthesizer: bool = False) -> None:
        """Route playback to the loudspeaker for synthesized speech."""
        self._cancel_recheck()
        self._apply(self.speaking_configuration(for_synthesizer))

    def deactivate(self) -> None:
        """Release the session and cancel any pending re-check."""
        self._cancel_recheck()
        if not self._is_active:
            return
        try:
            self.hardware.set_active(False)
        except AudioSessionError as e:
            logger.warning(f"Audio session deactivation failed: {e}")
        self._is_active = False
        self._applied = None
        logger.debug("Audio session deactivated")

    def close(self) -> None:
        """Deactivate and end the notification streams."""
        self.deactivate()
        self.interruptions.finish()
        self.route_changes.finish()

    def _apply(self, configuration: SessionConfiguration) -> None:
        if self._is_active and self._applied == configuration:
            logger.debug("Audio session already configured, skipping")
            return

        self.hardware.set_category(
            configuration.category, configuration.mode, configuration.options
        )
        if configuration.category is AudioCategory.PLAY_AND_RECORD:
            self.hardware.override_output_to_speaker(configuration.force_speaker)
        if not self._is_active:
            self.hardware.set_active(True)
            self._is_active = True
        self._applied = configuration
        logger.info(
            f"Audio session configured: {configuration.category.value}/"
            f"{configuration.mode.value} ({self.output_mode.value}), "
            f"route={self.hardware.current_route().output.value}"
        )

    def _schedule_speaker_recheck(self) -> None:
        self._cancel_recheck()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, skipping speaker re-check")
            return
        self._recheck_handle = loop.call_later(
            self.recheck_delay, self._recheck_speaker_route
        )

    def _cancel_recheck(self) -> None:
        if self._recheck_handle is not None:
            self._recheck_handle.cancel()
            self._recheck_handle = None

    def _recheck_speaker_route(self) -> None:
        self._recheck_handle = None
        if not self._is_active or self._applied is None:
            return
        if self._applied.category is not AudioCategory.PLAY_AND_RECORD:
            return

        route = self.hardware.current_route()
        if route.output is RouteOutput.RECEIVER:
            # The hardware sometimes reverts to the earpiece right after activation
            logger.info("Output reverted to receiver, re-applying speaker override")
            self.hardware.override_output_to_speaker(True)

    def _handle_interruption(self, interruption: InterruptionType) -> None:
        logger.info(f"Audio session interruption: {interruption.value}")
        if interruption is InterruptionType.BEGAN:
            self._is_active = False
            self._applied = None
        self.interruptions.emit(interruption)

    def _handle_route_change(self, reason: RouteChangeReason) -> None:
        logger.info(
            f"Audio route changed ({reason.value}): "
            f"{self.hardware.current_route().output.value}"
        )
        self.route_changes.emit(reason)
