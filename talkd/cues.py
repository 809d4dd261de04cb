"""Short audio cues for recording start/stop and startup."""

import threading

import numpy as np
import sounddevice as sd

CUE_ASCENDING = [440, 660, 880]
CUE_DESCENDING = [880, 660, 440]
CUE_REC_START = [440, 880]
CUE_REC_STOP = [880, 440]
CUE_FADE = 0.005   # fade in/out per tone (seconds)
CUE_VOLUME = 0.3   # amplitude multiplier
CUE_SAMPLE_RATE = 44100

_cue_stream = None
_cue_lock = threading.Lock()


def render_cue(frequencies: list[int], duration: float = 0.05,
               sample_rate: int = CUE_SAMPLE_RATE) -> np.ndarray:
    """Render a tone sequence with short fades to avoid clicks."""
    samples = []
    fade_samples = int(sample_rate * CUE_FADE)
    for freq in frequencies:
        t = np.linspace(0, duration, int(sample_rate * duration), False)
        tone = np.sin(2 * np.pi * freq * t)
        tone[:fade_samples] *= np.linspace(0, 1, fade_samples)
        tone[-fade_samples:] *= np.linspace(1, 0, fade_samples)
        samples.append(tone)
    return np.concatenate(samples).astype(np.float32) * CUE_VOLUME


def play_cue(frequencies: list[int], duration: float = 0.05) -> None:
    """Play a cue on a shared output stream without blocking the caller."""

    def _play():
        global _cue_stream
        audio = render_cue(frequencies, duration)
        try:
            with _cue_lock:
                if _cue_stream is None or not _cue_stream.active:
                    _cue_stream = sd.OutputStream(
                        samplerate=CUE_SAMPLE_RATE, channels=1, dtype=np.float32,
                    )
                    _cue_stream.start()
                _cue_stream.write(audio.reshape(-1, 1))
        except sd.PortAudioError as e:
            print(f"Audio cue failed: {e}")

    threading.Thread(target=_play, daemon=True).start()


def close() -> None:
    global _cue_stream
    with _cue_lock:
        if _cue_stream is not None:
            try:
                _cue_stream.stop()
                _cue_stream.close()
            except sd.PortAudioError:
                pass
            _cue_stream = None
