"""Audio processing utilities.

Format conversions used by capture, playback and the realtime transport:
downmixing, resampling, PCM16 encoding and input level metering.
"""

import logging

import numpy as np
import scipy.signal

from .audio_config import AudioConfig

logger = logging.getLogger(__name__)


def resample_audio(audio_array: np.ndarray, orig_sr: int, target_sr: int) -> np.ndarray:
    """
    Resample mono audio with scipy.

    Args:
        audio_array: Input audio data
        orig_sr: Original sample rate
        target_sr: Target sample rate

    Returns:
        Resampled float32 audio array
    """
    if orig_sr <= 0 or target_sr <= 0:
        raise ValueError(f"Invalid sample rates: {orig_sr} -> {target_sr}")

    if orig_sr == target_sr:
        return audio_array.astype(np.float32, copy=True)

    if len(audio_array) == 0:
        return np.zeros(0, dtype=np.float32)

    num_samples = max(1, int(round(len(audio_array) * target_sr / orig_sr)))
    return scipy.signal.resample(audio_array, num_samples).astype(np.float32)


def downmix_to_mono(audio_array: np.ndarray) -> np.ndarray:
    """Average channels of a (frames, channels) buffer into one channel."""
    if audio_array.ndim == 1:
        return audio_array.astype(np.float32, copy=False)
    return audio_array.mean(axis=1).astype(np.float32)


def float_to_pcm16(audio_array: np.ndarray) -> bytes:
    """Encode float samples in [-1, 1] as little-endian PCM16."""
    clipped = np.clip(audio_array, -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def pcm16_to_float(data: bytes) -> np.ndarray:
    """Decode little-endian PCM16 into float32 samples in [-1, 1]."""
    usable = len(data) - (len(data) % AudioConfig.PCM16_BYTES_PER_SAMPLE)
    if usable != len(data):
        logger.debug(f"Dropping trailing odd byte from {len(data)}-byte PCM16 chunk")
    samples = np.frombuffer(data[:usable], dtype="<i2")
    return samples.astype(np.float32) / 32768.0


def rms_level(audio_array: np.ndarray, gain: float = AudioConfig.LEVEL_GAIN) -> float:
    """Normalized input level in 0..1: ``min(1, rms * gain)``."""
    if audio_array.size == 0:
        return 0.0
    samples = audio_array.astype(np.float64, copy=False)
    rms = float(np.sqrt(np.mean(np.square(samples))))
    return min(1.0, rms * gain)


def convert_for_realtime(
    audio_array: np.ndarray,
    sample_rate: int,
    target_sr: int = AudioConfig.REALTIME_SAMPLE_RATE,
) -> bytes:
    """Downmix, resample and PCM16-encode a native capture buffer."""
    mono = downmix_to_mono(audio_array)
    resampled = resample_audio(mono, orig_sr=sample_rate, target_sr=target_sr)
    return float_to_pcm16(resampled)


def buffer_duration(audio_array: np.ndarray, sample_rate: int) -> float:
    """Duration in seconds of a (frames[, channels]) buffer."""
    if sample_rate <= 0:
        return 0.0
    return audio_array.shape[0] / float(sample_rate)
