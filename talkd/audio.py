"""Microphone capture and PCM/WAV helpers for the talkd daemon."""

import struct
import threading
import time
import os
from dataclasses import dataclass
from typing import Optional

import numpy as np
import sounddevice as sd

# Suppress PortAudio debug messages
os.environ.setdefault('PA_ALSA_PLUGHW', '1')

RECORD_SAMPLE_RATE = 44100
RECORD_CHANNELS = 1
WAV_HEADER_SIZE = 44

# Encoded captures shorter than this are accidental taps
MIN_RECORDING_BYTES = 1000


@dataclass
class WavInfo:
    sample_rate: int
    channels: int
    bits_per_sample: int
    byte_rate: int
    block_align: int
    data_length: int


def float_to_pcm16(samples) -> np.ndarray:
    """Clamp to [-1, 1] and scale asymmetrically to int16 (round half up)."""
    s = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(s < 0, s * 32768.0, s * 32767.0)
    return np.floor(scaled + 0.5).astype('<i2')


def decode_pcm16(data: bytes, channels: int = 1) -> np.ndarray:
    """Decode little-endian signed 16-bit PCM into float32 frames.

    Returns shape (frames,) for mono and (frames, channels) otherwise.
    Inverse of the mapping used by encode_wav.
    """
    usable = len(data) - len(data) % (2 * channels)
    ints = np.frombuffer(data[:usable], dtype='<i2').astype(np.float32)
    samples = np.where(ints < 0, ints / 32768.0, ints / 32767.0).astype(np.float32)
    if channels > 1:
        samples = samples.reshape(-1, channels)
    return samples


def encode_wav(samples, sample_rate: int, channels: int = 1) -> bytes:
    """Encode float samples as a canonical 16-bit PCM WAV (44-byte header)."""
    pcm = float_to_pcm16(np.ravel(samples))
    bits_per_sample = 16
    bytes_per_sample = bits_per_sample // 8
    data_length = pcm.size * bytes_per_sample

    header = struct.pack(
        '<4sI4s4sIHHIIHH4sI',
        b'RIFF', 36 + data_length, b'WAVE',
        b'fmt ', 16, 1, channels, sample_rate,
        sample_rate * channels * bytes_per_sample,  # byte rate
        channels * bytes_per_sample,                # block align
        bits_per_sample,
        b'data', data_length,
    )
    return header + pcm.tobytes()


def read_wav(data: bytes) -> tuple[WavInfo, np.ndarray]:
    """Parse a canonical WAV produced by encode_wav. Raises ValueError."""
    if len(data) < WAV_HEADER_SIZE or data[0:4] != b'RIFF' or data[8:12] != b'WAVE':
        raise ValueError("not a RIFF/WAVE payload")
    (_, _, channels, sample_rate, byte_rate, block_align,
     bits_per_sample) = struct.unpack('<IHHIIHH', data[16:36])
    if bits_per_sample != 16:
        raise ValueError(f"unsupported bit depth: {bits_per_sample}")
    data_length = struct.unpack('<I', data[40:44])[0]
    info = WavInfo(sample_rate, channels, bits_per_sample, byte_rate, block_align, data_length)
    payload = data[WAV_HEADER_SIZE:WAV_HEADER_SIZE + data_length]
    return info, decode_pcm16(payload, channels)


def downsample(buffer, source_rate: int, target_rate: int):
    """Resample with linear interpolation. Good enough for speech.

    Returns ``buffer`` itself (no copy) when the rates already match.
    """
    if source_rate == target_rate:
        return buffer
    samples = np.asarray(buffer, dtype=np.float32)
    ratio = source_rate / target_rate
    new_length = int(np.floor(len(samples) / ratio + 0.5))
    if new_length == 0:
        return np.zeros(0, dtype=np.float32)
    positions = np.arange(new_length) * ratio
    lo = np.floor(positions).astype(np.intp)
    hi = np.minimum(lo + 1, len(samples) - 1)
    frac = (positions - lo).astype(np.float32)
    if samples.ndim > 1:
        frac = frac[:, None]
    return (samples[lo] * (1 - frac) + samples[hi] * frac).astype(np.float32)


class AudioRecorder:
    """Records audio from microphone while activated.

    Opens the audio stream on start() and closes it on stop() so the
    microphone indicator turns off between recordings. Retries stream
    creation once with a brief delay to handle PortAudio errors that can
    occur on rapid stop/start cycles.
    """

    def __init__(self, sample_rate: int = RECORD_SAMPLE_RATE, device: Optional[int] = None):
        self.sample_rate = sample_rate
        self.channels = RECORD_CHANNELS
        self.device = device
        self._recording = False
        self._audio_chunks: list[np.ndarray] = []
        self._stream: Optional[sd.InputStream] = None
        self._lock = threading.Lock()

    def _audio_callback(self, indata: np.ndarray, frames: int,
                        time_info, status) -> None:
        """Called by sounddevice for each audio chunk."""
        if status and self._recording:
            print(f"Audio status: {status}")
        if self._recording:
            with self._lock:
                self._audio_chunks.append(indata.copy())

    def _ensure_stream(self) -> None:
        if self._stream is not None and self._stream.active:
            return

        if self._stream is not None:
            try:
                self._stream.close()
            except sd.PortAudioError:
                pass  # Device already closed or unavailable
            self._stream = None

        for attempt in range(2):
            try:
                self._stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype=np.float32,
                    device=self.device,
                    callback=self._audio_callback,
                    blocksize=4096,
                )
                self._stream.start()
                return
            except sd.PortAudioError:
                if attempt == 0:
                    time.sleep(0.1)
                else:
                    raise

    @property
    def is_recording(self) -> bool:
        return self._recording

    def start(self) -> None:
        """Start recording audio."""
        self._ensure_stream()

        with self._lock:
            self._audio_chunks = []
            self._recording = True

    def stop(self) -> np.ndarray:
        """Stop recording, close the stream, and return float32 samples."""
        self._recording = False

        with self._lock:
            if self._audio_chunks:
                result = np.concatenate(self._audio_chunks, axis=0).flatten()
            else:
                result = np.array([], dtype=np.float32)
            self._audio_chunks = []

        self._close_stream()
        return result

    def _close_stream(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError:
                pass  # Device already closed or unavailable
            self._stream = None

    def shutdown(self) -> None:
        """Close the audio stream completely. Call on daemon exit."""
        self._recording = False
        self._close_stream()

    def get_duration(self, audio: np.ndarray) -> float:
        """Get duration of audio in seconds."""
        return len(audio) / self.sample_rate
