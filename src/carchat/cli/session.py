"""
Backend resolution and voice session commands for the CarChat CLI.

``talk`` runs a real conversation from the terminal: typed turns with
``--text``, or voice turns from the microphone or a sound file.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Tuple

import click

from ..core.audio_io import AudioComponentFactory, AudioSessionManager, RealtimeAudioIO
from ..core.audio_io.interfaces import AudioPlayer
from ..core.config import Config
from ..core.exceptions import CarChatError
from ..core.llm import (
    BackendIdentifier,
    FallbackHints,
    ModelBackendFactory,
    ProviderSurface,
    ResolutionResult,
    SubscriptionTier,
    configuration_probe,
    resolve,
    runtime_probe,
)
from ..core.logging import clear_session_context, set_session_context
from ..core.protocols import MessageRole, TranscriptRole, VoiceSession
from ..core.stores import (
    REALTIME_TOKEN_KEY,
    CredentialStore,
    EnvironmentCredentialStore,
    SettingsStore,
    YamlSettingsStore,
)
from ..services import (
    BaseVoiceSession,
    RealtimeVoiceSession,
    SessionRegistry,
    SpeechEndpointingConfig,
    SpeechPaceProfile,
    TurnBasedVoiceSession,
    WhisperSTTEngine,
    create_synthesizer,
)

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = Path.home() / ".carchat" / "settings.yaml"

_settings_option = click.option(
    "--settings-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_SETTINGS_FILE,
    show_default=True,
    help="YAML file holding persisted preferences",
)
_tier_option = click.option(
    "--tier",
    type=click.Choice([t.value for t in SubscriptionTier]),
    default=SubscriptionTier.BYOK.value,
    show_default=True,
)
_surface_option = click.option(
    "--surface",
    type=click.Choice([s.value for s in ProviderSurface]),
    default=ProviderSurface.PHONE.value,
    show_default=True,
)


@click.group()
def session_commands() -> None:
    """Voice session commands."""
    pass


async def _resolve_backend(
    config: Config,
    requested: BackendIdentifier,
    tier: SubscriptionTier,
    surface: ProviderSurface,
    credentials: CredentialStore,
    settings: SettingsStore,
    probe_runtime: bool,
) -> ResolutionResult:
    factory = ModelBackendFactory(config.providers)
    platform_version = config.providers.platform_version
    if probe_runtime:
        is_runtime_available = runtime_probe(factory, platform_version)
    else:

        async def is_runtime_available(backend: BackendIdentifier) -> bool:
            return True

    return await resolve(
        requested,
        tier,
        surface,
        platform_version,
        configuration_probe(credentials, settings),
        is_runtime_available,
        FallbackHints.from_settings(settings),
    )


def _parse_backend(value: Optional[str], settings: SettingsStore) -> BackendIdentifier:
    if value:
        try:
            return BackendIdentifier.parse(value)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="backend")
    return settings.selected_backend or BackendIdentifier.OPENAI


@session_commands.command(name="resolve")
@click.argument("backend")
@_tier_option
@_surface_option
@_settings_option
@click.option("--probe-runtime", is_flag=True, help="Probe the on-device backend live")
def resolve_command(
    backend: str, tier: str, surface: str, settings_file: Path, probe_runtime: bool
) -> None:
    """Show which backend would serve a request for BACKEND."""
    config = Config.from_env()
    settings = YamlSettingsStore(settings_file)
    requested = _parse_backend(backend, settings)

    try:
        result = asyncio.run(
            _resolve_backend(
                config,
                requested,
                SubscriptionTier(tier),
                ProviderSurface(surface),
                EnvironmentCredentialStore(),
                settings,
                probe_runtime,
            )
        )
    except CarChatError as e:
        raise click.ClickException(e.message)

    click.echo(f"Requested: {result.requested.display_name}")
    click.echo(f"Effective: {result.effective.display_name}")
    if result.did_fallback:
        click.echo(f"Reason:    {result.fallback_reason.value}")
        click.echo(result.message)


@session_commands.command()
@click.option("--backend", help="Requested backend (default: selected in settings)")
@click.option(
    "--mode",
    type=click.Choice(["turn", "realtime"]),
    default="turn",
    show_default=True,
)
@click.option("--prompt", default="", help="System prompt / persona instructions")
@click.option("--text", "texts", multiple=True, help="Typed turn; repeatable")
@click.option("--turns", type=int, default=1, show_default=True, help="Voice turns")
@click.option("--input-file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output-file", type=click.Path(dir_okay=False))
@click.option("--mock-audio", is_flag=True, help="Use in-memory audio devices")
@click.option("--timeout", type=float, default=120.0, show_default=True)
@_tier_option
@_surface_option
@_settings_option
def talk(
    backend: Optional[str],
    mode: str,
    prompt: str,
    texts: Tuple[str, ...],
    turns: int,
    input_file: Optional[str],
    output_file: Optional[str],
    mock_audio: bool,
    timeout: float,
    tier: str,
    surface: str,
    settings_file: Path,
) -> None:
    """Hold a conversation with the resolved backend."""
    if mode == "realtime" and texts:
        raise click.UsageError("--text is only supported in turn mode")
    if mode == "realtime" and not SubscriptionTier(tier).supports_realtime:
        raise click.UsageError(
            f"Realtime voice is not included in the {SubscriptionTier(tier).display_name} tier"
        )

    config = Config.from_env()
    settings = YamlSettingsStore(settings_file)
    requested = _parse_backend(backend, settings)

    try:
        asyncio.run(
            _talk(
                config,
                settings,
                requested,
                mode,
                prompt,
                texts,
                turns,
                input_file,
                output_file,
                mock_audio,
                timeout,
                SubscriptionTier(tier),
                ProviderSurface(surface),
            )
        )
    except CarChatError as e:
        raise click.ClickException(e.message)


async def _talk(
    config: Config,
    settings: SettingsStore,
    requested: BackendIdentifier,
    mode: str,
    prompt: str,
    texts: Tuple[str, ...],
    turns: int,
    input_file: Optional[str],
    output_file: Optional[str],
    mock_audio: bool,
    timeout: float,
    tier: SubscriptionTier,
    surface: ProviderSurface,
) -> None:
    credentials = EnvironmentCredentialStore()
    result = await _resolve_backend(
        config, requested, tier, surface, credentials, settings, probe_runtime=False
    )
    if result.did_fallback:
        click.echo(result.message, err=True)
    effective = result.effective
    set_session_context(backend=effective.value, surface=surface.value)

    session_manager = AudioSessionManager(
        AudioComponentFactory.create_hardware(),
        lambda: settings.output_mode,
        recheck_delay=config.audio.listening_recheck_delay_s,
    )
    player = AudioComponentFactory.create_audio_player(
        use_mocks=mock_audio or None, output_file=output_file
    )
    registry = SessionRegistry()

    if mode == "realtime":
        session: BaseVoiceSession = await _build_realtime_session(
            config,
            credentials,
            settings,
            effective,
            session_manager,
            player,
            mock_audio,
            input_file,
        )
    else:
        session = await _build_turn_session(
            config,
            credentials,
            settings,
            effective,
            session_manager,
            player,
            mock_audio,
            input_file,
            prompt,
            typed_only=bool(texts),
        )

    set_session_context(session_id=session.session_id)
    await registry.register(surface, session)
    try:
        if texts:
            await _run_typed_turns(session, prompt, texts)
        else:
            await _run_voice_turns(session, prompt, turns, timeout)
    finally:
        await registry.stop_all()
        await player.stop()
        clear_session_context()


async def _build_turn_session(
    config: Config,
    credentials: CredentialStore,
    settings: SettingsStore,
    effective: BackendIdentifier,
    session_manager: AudioSessionManager,
    player: AudioPlayer,
    mock_audio: bool,
    input_file: Optional[str],
    prompt: str,
    typed_only: bool,
) -> TurnBasedVoiceSession:
    factory = ModelBackendFactory(
        config.providers,
        request_timeout=config.pipeline.request_timeout_s,
        max_tokens=config.pipeline.max_tokens,
    )
    backend = factory.create(effective, await credentials.get_for(effective))
    synthesizer = await create_synthesizer(
        config.tts,
        player,
        credentials,
        settings,
        session_manager,
        watchdog_s=config.pipeline.synthesis_watchdog_s,
    )

    stt = None
    if not typed_only:
        capture = AudioComponentFactory.create_audio_capture(
            use_mocks=mock_audio or None, input_file=input_file
        )
        stt = WhisperSTTEngine(
            capture,
            api_key=await credentials.get_for(BackendIdentifier.OPENAI),
            model=config.stt.whisper_model,
            language=config.stt.language or None,
            endpointing=SpeechEndpointingConfig.for_profile(
                SpeechPaceProfile(config.stt.pace)
            ),
            sample_rate=config.stt.sample_rate,
            chunk_size=config.audio.capture_block_size,
        )

    return TurnBasedVoiceSession(
        stt,
        synthesizer,
        backend,
        session_manager=session_manager,
        system_prompt=prompt,
        settings=settings,
        backend_identifier=effective,
        sentence_pattern=config.pipeline.sentence_pattern,
    )


async def _build_realtime_session(
    config: Config,
    credentials: CredentialStore,
    settings: SettingsStore,
    effective: BackendIdentifier,
    session_manager: AudioSessionManager,
    player: AudioPlayer,
    mock_audio: bool,
    input_file: Optional[str],
) -> RealtimeVoiceSession:
    capture = AudioComponentFactory.create_audio_capture(
        use_mocks=mock_audio or None, input_file=input_file
    )
    audio = RealtimeAudioIO(
        capture,
        player,
        sample_rate=config.realtime.sample_rate,
        level_gain=config.realtime.level_gain,
        chunk_size=config.realtime.tap_buffer_size,
    )
    return RealtimeVoiceSession(
        audio,
        await credentials.get(REALTIME_TOKEN_KEY),
        settings.device_id,
        backend=effective,
        config=config.realtime,
        session_manager=session_manager,
    )


async def _run_typed_turns(
    session: VoiceSession, prompt: str, texts: Tuple[str, ...]
) -> None:
    if not isinstance(session, TurnBasedVoiceSession):
        raise click.UsageError("--text is only supported in turn mode")
    await session.start(prompt)
    for text in texts:
        click.echo(f"You: {text}")
        await session.send_text(text)
        await session.wait_until_idle()
        if session.state.is_error:
            raise click.ClickException(session.state.message or "Session failed")
        reply = session.history[-1]
        if reply.role is MessageRole.ASSISTANT:
            click.echo(f"Assistant: {reply.content}")


async def _run_voice_turns(
    session: VoiceSession, prompt: str, turns: int, timeout: float
) -> None:
    finished = asyncio.Event()
    failure: Optional[str] = None
    states = session.states()
    transcripts = session.transcripts()

    async def watch_states() -> None:
        nonlocal failure
        async for state in states:
            click.echo(f"[{state}]", err=True)
            if state.is_error:
                failure = state.message
                finished.set()
                return

    async def watch_transcripts() -> None:
        completed = 0
        async for transcript in transcripts:
            if not transcript.is_final:
                continue
            speaker = "You" if transcript.role is TranscriptRole.USER else "Assistant"
            click.echo(f"{speaker}: {transcript.text}")
            if transcript.role is TranscriptRole.ASSISTANT:
                completed += 1
                if completed >= turns:
                    finished.set()
                    return

    watchers = [
        asyncio.create_task(watch_states()),
        asyncio.create_task(watch_transcripts()),
    ]
    try:
        await session.start(prompt)
        try:
            await asyncio.wait_for(finished.wait(), timeout)
        except asyncio.TimeoutError:
            click.echo(f"No completed turn within {timeout:.0f}s", err=True)
    finally:
        for watcher in watchers:
            watcher.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)

    if failure is not None:
        raise click.ClickException(failure)
