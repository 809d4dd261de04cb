"""TTS engine backends: Kokoro (local) and OpenAI (cloud).

Both engines stream raw PCM for the playback scheduler: 24 kHz, mono,
16-bit signed little-endian.
"""

import logging
import os
import threading
from typing import Iterator

import numpy as np

from talkd.audio import float_to_pcm16

# Suppress phonemizer "words count mismatch" warnings (harmless espeak quirk)
logging.getLogger("phonemizer").setLevel(logging.ERROR)

KOKORO_MODEL = "mlx-community/Kokoro-82M-bf16"

TTS_SAMPLE_RATE = 24000
TTS_CHANNELS = 1
TTS_BITS_PER_SAMPLE = 16

# ~100ms of audio per streamed chunk
PCM_CHUNK_SIZE = TTS_SAMPLE_RATE * (TTS_BITS_PER_SAMPLE // 8) * TTS_CHANNELS // 10


class TTSError(RuntimeError):
    """Speech synthesis failed; the message is short enough to show the user."""


class KokoroTTSEngine:
    """Kokoro text-to-speech engine. Lazy-loads model on first use."""

    def __init__(self, voice: str = "af_heart", speed: float = 1.0, lang_code: str = "a"):
        self.voice = voice
        self.speed = speed
        self.lang_code = lang_code
        self._model = None
        self._lock = threading.Lock()

    def _ensure_model(self):
        """Load the Kokoro model if not already loaded."""
        if self._model is not None:
            return
        with self._lock:
            if self._model is not None:
                return
            print("Loading Kokoro TTS model (first time may download ~360MB)...")
            from mlx_audio.tts import load
            self._model = load(KOKORO_MODEL)
            # Warm up: first generate creates the KokoroPipeline (which prints to stdout)
            for _ in self._model.generate(".", voice=self.voice, lang_code=self.lang_code):
                pass
            print("Kokoro TTS model loaded.")

    def synthesize_stream(self, text: str) -> Iterator[bytes]:
        """Yield PCM chunks as Kokoro finishes each phrase of ``text``."""
        if not text:
            return
        self._ensure_model()
        for result in self._model.generate(
            text, voice=self.voice, speed=self.speed, lang_code=self.lang_code
        ):
            audio = np.asarray(result.audio, dtype=np.float32).ravel()
            if audio.size:
                yield float_to_pcm16(audio).tobytes()


class OpenAITTSEngine:
    """OpenAI cloud text-to-speech engine, streamed as raw PCM."""

    API_URL = "https://api.openai.com/v1/audio/speech"

    def __init__(self, api_key: str = "", model: str = "gpt-4o-mini-tts",
                 voice: str = "alloy", speed: float = 1.0):
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self._model = model
        self.voice = voice
        self.speed = speed

    def _ensure_model(self):
        """No-op, there is no local model to load."""
        pass

    def synthesize_stream(self, text: str) -> Iterator[bytes]:
        """Yield 16-bit aligned PCM chunks as the response body arrives.

        Raises TTSError with a user-facing message on API or network failure.
        """
        if not text:
            return

        if not self._api_key:
            raise TTSError("No OpenAI API key configured (set speech.openai_api_key or OPENAI_API_KEY)")

        import requests

        try:
            response = requests.post(
                self.API_URL,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "model": self._model,
                    "input": text,
                    "voice": self.voice,
                    "speed": self.speed,
                    "response_format": "pcm",  # raw 24kHz 16-bit signed LE mono
                },
                stream=True,
                timeout=30,
            )
        except requests.Timeout as e:
            raise TTSError("OpenAI TTS request timed out") from e
        except requests.ConnectionError as e:
            raise TTSError("Cannot reach OpenAI API") from e

        with response:
            if response.status_code >= 400:
                raise TTSError(self._describe_http_error(response))

            leftover = b""
            try:
                for data in response.iter_content(chunk_size=PCM_CHUNK_SIZE):
                    if not data:
                        continue
                    pcm = leftover + data
                    # Carry an odd trailing byte over for 16-bit alignment
                    cut = len(pcm) - len(pcm) % 2
                    pcm, leftover = pcm[:cut], pcm[cut:]
                    if pcm:
                        yield pcm
            except requests.RequestException as e:
                raise TTSError(f"OpenAI TTS stream interrupted: {e}") from e

    @staticmethod
    def _describe_http_error(response) -> str:
        status = response.status_code
        detail = ""
        try:
            detail = response.json().get("error", {}).get("message", "")
        except (ValueError, AttributeError):
            detail = response.text
        print(f"OpenAI TTS error: HTTP {status}: {detail}")
        if status == 401:
            return "Invalid OpenAI API key"
        if status == 429:
            if "insufficient_quota" in (response.text or ""):
                return "Insufficient credits, check OpenAI billing"
            return "OpenAI rate limited"
        return f"OpenAI TTS error: HTTP {status}"


def create_tts_engine(engine: str = "kokoro", **kwargs):
    """Factory: create the appropriate TTS engine.

    Args:
        engine: "kokoro" or "openai"
        **kwargs: voice, speed, lang_code (Kokoro); api_key, model, voice, speed (OpenAI)
    """
    if engine == "openai":
        return OpenAITTSEngine(
            api_key=kwargs.get("api_key", ""),
            model=kwargs.get("model", "gpt-4o-mini-tts"),
            voice=kwargs.get("voice", "alloy"),
            speed=kwargs.get("speed", 1.0),
        )
    if engine != "kokoro":
        print(f"WARNING: Unknown TTS engine '{engine}', falling back to kokoro. "
              f"Valid engines: kokoro, openai")
    return KokoroTTSEngine(
        voice=kwargs.get("voice", "af_heart"),
        speed=kwargs.get("speed", 1.0),
        lang_code=kwargs.get("lang_code", "a"),
    )
