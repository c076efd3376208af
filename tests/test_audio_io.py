"""
Tests for audio conversion utilities and the in-memory and file devices.
"""

import numpy as np
import pytest
import soundfile as sf

from carchat.core.audio_io import (
    AudioComponentFactory,
    FileAudioCapture,
    FileAudioPlayer,
    InMemoryAudioCapture,
    InMemoryAudioPlayer,
    SimulatedAudioHardware,
    buffer_duration,
    convert_for_realtime,
    downmix_to_mono,
    float_to_pcm16,
    pcm16_to_float,
    resample_audio,
    rms_level,
)


class TestAudioUtils:
    """Test format conversion and metering."""

    def test_downmix_averages_channels(self) -> None:
        """Stereo frames collapse to their mean."""
        stereo = np.array([[0.2, 0.4], [-0.5, 0.5]], dtype=np.float32)
        assert downmix_to_mono(stereo).tolist() == pytest.approx([0.3, 0.0])

    def test_resample_changes_length(self) -> None:
        """48 kHz capture becomes half as many 24 kHz samples."""
        audio = np.sin(np.linspace(0, 2 * np.pi * 10, 4800)).astype(np.float32)
        resampled = resample_audio(audio, 48000, 24000)
        assert resampled.shape == (2400,)
        assert resampled.dtype == np.float32

    def test_resample_rejects_bad_rates(self) -> None:
        """Non-positive rates are rejected."""
        with pytest.raises(ValueError):
            resample_audio(np.zeros(10, dtype=np.float32), 0, 24000)

    def test_pcm16_encoding_clips(self) -> None:
        """Out-of-range samples are clipped before encoding."""
        pcm = float_to_pcm16(np.array([2.0, -2.0, 0.0], dtype=np.float32))
        assert np.frombuffer(pcm, dtype="<i2").tolist() == [32767, -32767, 0]

    def test_pcm16_decoding_drops_odd_byte(self) -> None:
        """A trailing half sample is ignored."""
        samples = pcm16_to_float(b"\x00\x40\x00\xc0\x01")
        assert samples.tolist() == [0.5, -0.5]

    def test_rms_level(self) -> None:
        """Level is RMS times gain, capped at one."""
        assert rms_level(np.full(100, 0.1, dtype=np.float32)) == pytest.approx(0.5)
        assert rms_level(np.full(100, 0.9, dtype=np.float32)) == 1.0
        assert rms_level(np.zeros(0, dtype=np.float32)) == 0.0

    def test_convert_for_realtime(self) -> None:
        """Stereo 48 kHz becomes mono 24 kHz PCM16."""
        stereo = np.zeros((960, 2), dtype=np.float32)
        assert len(convert_for_realtime(stereo, 48000)) == 480 * 2

    def test_buffer_duration(self) -> None:
        """Duration is frames over rate."""
        assert buffer_duration(np.zeros((4800, 2)), 48000) == pytest.approx(0.1)
        assert buffer_duration(np.zeros(10), 0) == 0.0


class TestInMemoryDevices:
    """Test the in-memory capture and player."""

    @pytest.mark.asyncio
    async def test_capture_stream_ends_on_stop(self) -> None:
        """Fed buffers are delivered and stop ends the stream."""
        capture = InMemoryAudioCapture(sample_rate=16000)
        await capture.start_capture()
        capture.feed(np.ones(4))
        capture.feed(np.zeros(4))

        first = await capture.read_audio_chunk()
        second = await capture.read_audio_chunk()
        await capture.stop_capture()

        assert first.tolist() == [1.0] * 4
        assert second.tolist() == [0.0] * 4
        assert await capture.read_audio_chunk() is None
        assert capture.sample_rate == 16000

    @pytest.mark.asyncio
    async def test_player_restart_drops_pending(self) -> None:
        """Restarting discards queued buffers and keeps playing."""
        player = InMemoryAudioPlayer(auto_drain=False)
        await player.start()
        player.schedule(np.ones(4, dtype=np.float32))

        await player.restart()
        player.schedule(np.zeros(4, dtype=np.float32))

        assert len(player.dropped) == 1
        assert len(player.pending) == 1
        assert player.is_playing()
        assert not await player.wait_until_drained()

        player.drain()
        assert await player.wait_until_drained()
        assert len(player.played) == 1

    def test_stopped_player_drops_buffers(self) -> None:
        """Nothing scheduled on a stopped player is heard."""
        player = InMemoryAudioPlayer()
        player.schedule(np.ones(4, dtype=np.float32))
        assert player.played == []
        assert len(player.dropped) == 1


class TestFileDevices:
    """Test the sound file capture and player."""

    @pytest.mark.asyncio
    async def test_file_capture_replays_in_chunks(self, temp_dir) -> None:
        """A sound file is replayed in fixed-size buffers at its own rate."""
        path = temp_dir / "input.wav"
        sf.write(str(path), np.zeros(2500, dtype=np.float32), 16000)

        capture = FileAudioCapture(str(path), chunk_size=1000)
        await capture.start_capture()
        chunks = []
        while True:
            chunk = await capture.read_audio_chunk()
            if chunk is None:
                break
            chunks.append(chunk)

        assert [len(c) for c in chunks] == [1000, 1000, 500]
        assert capture.sample_rate == 16000
        assert not capture.is_capturing()

    @pytest.mark.asyncio
    async def test_missing_input_file(self, temp_dir) -> None:
        """A missing file fails at start."""
        capture = FileAudioCapture(str(temp_dir / "missing.wav"))
        with pytest.raises(FileNotFoundError):
            await capture.start_capture()

    @pytest.mark.asyncio
    async def test_file_player_writes_on_stop(self, temp_dir) -> None:
        """Everything heard is written when the player stops."""
        path = temp_dir / "out" / "reply.wav"
        player = FileAudioPlayer(str(path))
        await player.start(24000)
        player.schedule(np.zeros(240, dtype=np.float32))
        player.schedule(np.zeros(120, dtype=np.float32))
        await player.stop()

        data, rate = sf.read(str(path))
        assert len(data) == 360
        assert rate == 24000


class TestAudioComponentFactory:
    """Test component selection."""

    def test_mock_components(self, monkeypatch) -> None:
        """The environment switch selects in-memory devices."""
        monkeypatch.setenv("CARCHAT_USE_MOCK_AUDIO", "true")
        assert isinstance(AudioComponentFactory.create_audio_capture(), InMemoryAudioCapture)
        assert isinstance(AudioComponentFactory.create_audio_player(), InMemoryAudioPlayer)

    def test_files_win(self, temp_dir) -> None:
        """Input and output files select the file devices."""
        capture = AudioComponentFactory.create_audio_capture(
            use_mocks=True, input_file=str(temp_dir / "in.wav")
        )
        player = AudioComponentFactory.create_audio_player(
            output_file=str(temp_dir / "out.wav")
        )
        assert isinstance(capture, FileAudioCapture)
        assert isinstance(player, FileAudioPlayer)

    def test_hardware(self) -> None:
        """Desktop hosts get the simulated session handle."""
        hardware = AudioComponentFactory.create_hardware(bluetooth_connected=True)
        assert isinstance(hardware, SimulatedAudioHardware)
        assert hardware.bluetooth_connected
