"""Gapless streaming playback of synthesized speech.

Chunks of raw PCM arrive from the synthesis worker at whatever pace the TTS
backend manages. PlaybackScheduler places each chunk on a monotonic play-time
cursor so that chunk N+1 starts exactly when chunk N ends, as long as the
producer keeps ahead of real time. If it falls behind, the next chunk starts
"now" and the listener hears a short gap; there is no look-ahead buffering.
"""

import threading
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
import sounddevice as sd

from talkd.audio import decode_pcm16, downsample


@dataclass
class PlaybackCursor:
    next_play_time: float = 0.0
    active_sources: int = 0
    ended: bool = False


@dataclass
class _Source:
    samples: np.ndarray  # (frames, channels) float32 at the stream rate
    start_frame: int
    on_finished: Callable[[], None]

    @property
    def end_frame(self) -> int:
        return self.start_frame + len(self.samples)


class SoundDeviceSink:
    """Mixes scheduled buffers into one continuously running output stream.

    The clock is the number of frames handed to the device divided by the
    sample rate, so it only moves forward and only while the device is
    consuming audio. The stream is opened on first use and kept running
    (emitting silence) until close().

    A buffer counts as finished only once the clock has moved past its last
    frame by one block plus the device's output latency, so it has actually
    left the speaker and cannot leak into the next recording.
    """

    def __init__(self, device: Optional[int] = None, blocksize: int = 1024):
        self.device = device
        self.blocksize = blocksize
        self.sample_rate: Optional[int] = None
        self.channels: Optional[int] = None
        self._stream: Optional[sd.OutputStream] = None
        self._sources: list[_Source] = []
        self._frame = 0
        self._tail_frames = 0
        self._lock = threading.Lock()

    def open(self, sample_rate: int, channels: int) -> None:
        if self._stream is not None:
            return
        stream = sd.OutputStream(
            samplerate=sample_rate,
            channels=channels,
            dtype=np.float32,
            device=self.device,
            callback=self._callback,
            blocksize=self.blocksize,
        )
        try:
            latency = float(stream.latency)
        except (TypeError, ValueError):
            latency = 0.0
        with self._lock:
            self.sample_rate = sample_rate
            self.channels = channels
            self._frame = 0
            self._tail_frames = self.blocksize + int(round(latency * sample_rate))
        try:
            stream.start()
        except sd.PortAudioError:
            stream.close()
            self.sample_rate = None
            raise
        self._stream = stream

    def current_time(self) -> float:
        with self._lock:
            if not self.sample_rate:
                return 0.0
            return self._frame / self.sample_rate

    def _adapt(self, samples: np.ndarray, sample_rate: int) -> np.ndarray:
        """Convert a (frames, channels) buffer to the stream's format."""
        if samples.ndim == 1:
            samples = samples[:, None]
        if samples.shape[1] != self.channels:
            mono = samples.mean(axis=1)
            samples = np.repeat(mono[:, None], self.channels, axis=1)
        samples = downsample(samples, sample_rate, self.sample_rate)
        return np.ascontiguousarray(samples, dtype=np.float32)

    def play(self, samples: np.ndarray, sample_rate: int, start_time: float,
             on_finished: Callable[[], None]) -> None:
        """Schedule samples to start at start_time on this sink's clock."""
        channels = 1 if samples.ndim == 1 else samples.shape[1]
        self.open(sample_rate, channels)
        buf = self._adapt(samples, sample_rate)
        with self._lock:
            start_frame = max(int(round(start_time * self.sample_rate)), self._frame)
            self._sources.append(_Source(buf, start_frame, on_finished))

    def _callback(self, outdata: np.ndarray, frames: int, time_info, status) -> None:
        outdata.fill(0)
        finished = []
        with self._lock:
            block_start = self._frame
            block_end = block_start + frames
            pending = []
            for src in self._sources:
                if src.start_frame >= block_end:
                    pending.append(src)
                    continue
                src_from = max(0, block_start - src.start_frame)
                out_from = max(0, src.start_frame - block_start)
                n = min(frames - out_from, len(src.samples) - src_from)
                if n > 0:
                    outdata[out_from:out_from + n] += src.samples[src_from:src_from + n]
                if src.end_frame + self._tail_frames <= block_end:
                    finished.append(src.on_finished)
                else:
                    pending.append(src)
            self._sources = pending
            self._frame = block_end
        # Never run pipeline code on the audio thread
        for callback in finished:
            threading.Thread(target=callback, daemon=True).start()

    def close(self) -> None:
        with self._lock:
            self._sources = []
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError:
                pass  # Device already closed or unavailable
            self._stream = None
        self.sample_rate = None


class PlaybackScheduler:
    """Schedules PCM chunks back to back and reports when all have played."""

    def __init__(self, sink=None):
        self.sink = sink if sink is not None else SoundDeviceSink()
        self.cursor = PlaybackCursor()
        self._on_all_finished: Optional[Callable[[], None]] = None
        self._session = 0
        self._lock = threading.Lock()

    def begin_session(self, on_all_finished: Callable[[], None]) -> None:
        """Reset the cursor and arm a new session."""
        with self._lock:
            self._session += 1
            self.cursor = PlaybackCursor()
            self._on_all_finished = on_all_finished

    def push_chunk(self, data: bytes, sample_rate: int, channels: int,
                   bits_per_sample: int) -> Optional[float]:
        """Schedule one chunk of little-endian signed PCM.

        Returns the chunk's start time on the sink clock, or None if the
        chunk held no complete sample.
        """
        if bits_per_sample != 16:
            raise ValueError(f"unsupported bit depth: {bits_per_sample}")
        samples = decode_pcm16(data, channels)
        sample_count = len(samples)
        if sample_count == 0:
            return None
        duration = sample_count / sample_rate

        with self._lock:
            session = self._session
            cursor = self.cursor
            previous_play_time = cursor.next_play_time
            start_time = max(self.sink.current_time(), cursor.next_play_time)
            cursor.next_play_time = start_time + duration
            cursor.active_sources += 1

        try:
            self.sink.play(samples, sample_rate, start_time,
                           lambda: self._source_ended(session))
        except Exception:
            # The source will never finish; give its slot back
            self._abandon_source(session, previous_play_time, start_time + duration)
            raise
        return start_time

    def _abandon_source(self, session: int, previous_play_time: float,
                        reserved_until: float) -> None:
        with self._lock:
            if session != self._session:
                return
            self.cursor.active_sources -= 1
            if self.cursor.next_play_time == reserved_until:
                self.cursor.next_play_time = previous_play_time
            callback = None
            if self.cursor.ended and self.cursor.active_sources <= 0:
                callback = self._take_callback()
        if callback:
            callback()

    def _take_callback(self) -> Optional[Callable[[], None]]:
        # Caller holds self._lock
        callback = self._on_all_finished
        self._on_all_finished = None
        return callback

    def _source_ended(self, session: int) -> None:
        with self._lock:
            if session != self._session:
                return  # stale completion from an earlier session
            self.cursor.active_sources -= 1
            callback = None
            if self.cursor.ended and self.cursor.active_sources <= 0:
                callback = self._take_callback()
        if callback:
            callback()

    def end_session(self) -> None:
        """No more chunks will follow; fire completion once everything has played."""
        with self._lock:
            self.cursor.ended = True
            callback = None
            if self.cursor.active_sources <= 0:
                callback = self._take_callback()
        if callback:
            callback()

    def close(self) -> None:
        with self._lock:
            self._on_all_finished = None
        self.sink.close()
