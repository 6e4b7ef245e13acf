"""Audio helpers for the voice pipeline: speech gating and WAV packaging."""

import io
import wave

import numpy as np

TARGET_SAMPLE_RATE = 16000


def float32_samples(raw: bytes) -> np.ndarray:
    """Little-endian float32 PCM bytes as a sample array."""
    return np.frombuffer(raw, dtype="<f4").astype(np.float32)


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def is_silence(samples: np.ndarray, threshold: float) -> bool:
    return rms(samples) < threshold


def resample(samples: np.ndarray, from_rate: int, to_rate: int = TARGET_SAMPLE_RATE) -> np.ndarray:
    """Linear-interpolation resample; returns the input unchanged when rates match."""
    if from_rate == to_rate or samples.size == 0:
        return samples
    duration = samples.size / from_rate
    target_len = max(1, int(round(duration * to_rate)))
    source_t = np.arange(samples.size) / from_rate
    target_t = np.arange(target_len) / to_rate
    return np.interp(target_t, source_t, samples).astype(np.float32)


def float32_to_wav(samples: np.ndarray, sample_rate: int = TARGET_SAMPLE_RATE) -> bytes:
    """Mono float32 samples as a 16 kHz 16-bit PCM WAV file."""
    mono = resample(samples, sample_rate, TARGET_SAMPLE_RATE)
    pcm16 = np.clip(mono * 32768.0, -32768, 32767).astype("<i2")
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(TARGET_SAMPLE_RATE)
        wf.writeframes(pcm16.tobytes())
    return buffer.getvalue()
