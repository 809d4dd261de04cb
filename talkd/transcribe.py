"""Speech-to-text for the talkd daemon: local Whisper or the OpenAI API."""

import os
import threading
from typing import Optional

import numpy as np

from talkd.audio import downsample, read_wav

WHISPER_SAMPLE_RATE = 16000
OPENAI_TRANSCRIBE_URL = "https://api.openai.com/v1/audio/transcriptions"


class TranscriptionError(RuntimeError):
    """Transcription failed; the message is short enough to show the user."""


class Transcriber:
    """Transcribes WAV audio with faster-whisper, MLX Whisper or the OpenAI API."""

    # Map simple model names to MLX HuggingFace repos
    MLX_MODELS = {
        "tiny.en": "mlx-community/whisper-tiny.en-mlx",
        "base.en": "mlx-community/whisper-base.en-mlx",
        "small.en": "mlx-community/whisper-small.en-mlx",
        "medium.en": "mlx-community/whisper-medium.en-mlx",
        "large-v3": "mlx-community/whisper-large-v3-mlx",
        "large-v3-turbo": "mlx-community/whisper-large-v3-turbo",
    }

    def __init__(self, model_name: str = "base.en", device: str = "cpu",
                 backend: str = "faster-whisper", language: Optional[str] = None,
                 api_key: str = "", openai_model: str = "gpt-4o-mini-transcribe"):
        self.model_name = model_name
        self.device = device
        self.backend = backend
        self.language = language
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self.openai_model = openai_model
        self._model = None
        self._lock = threading.Lock()
        self._model_dir = os.path.expanduser("~/.talkd/models/whisper")

    def _ensure_model(self):
        """Lazy-load the Whisper model."""
        with self._lock:
            if self._model is not None:
                return self._model
            if self.backend == "openai":
                self._model = "openai"  # nothing to load
                return self._model
            if self.backend == "mlx":
                print(f"Loading MLX Whisper model: {self.model_name}")
                # Warm up MLX by doing a dummy transcription (triggers actual model load)
                self._transcribe_mlx(np.zeros(WHISPER_SAMPLE_RATE, dtype=np.float32))
                self._model = "mlx"
            else:
                from faster_whisper import WhisperModel
                print(f"Loading Whisper model: {self.model_name}")
                self._model = WhisperModel(
                    self.model_name,
                    device=self.device,
                    download_root=self._model_dir,
                )
            print("Whisper model loaded.")
            return self._model

    def prepare(self, audio_bytes: bytes) -> np.ndarray:
        """Decode a WAV payload to mono float32 at Whisper's 16 kHz."""
        info, samples = read_wav(audio_bytes)
        if samples.ndim > 1:
            samples = samples.mean(axis=1)
        return np.asarray(
            downsample(samples, info.sample_rate, WHISPER_SAMPLE_RATE), dtype=np.float32
        )

    def transcribe(self, audio_bytes: bytes) -> str:
        """Transcribe a WAV payload to text. Returns "" for silence."""
        audio = self.prepare(audio_bytes)
        if len(audio) == 0:
            return ""

        self._ensure_model()

        if self.backend == "openai":
            text = self._transcribe_openai(audio_bytes)
        elif self.backend == "mlx":
            text = self._transcribe_mlx(audio)
        else:
            text = self._transcribe_faster_whisper(audio)
        print(f"Transcribed: {text}")
        return text

    def _transcribe_mlx(self, audio: np.ndarray) -> str:
        import mlx_whisper

        mlx_model = self.MLX_MODELS.get(self.model_name)
        if mlx_model is None:
            valid = ", ".join(self.MLX_MODELS.keys())
            print(f"WARNING: Unknown model '{self.model_name}', falling back to large-v3. "
                  f"Valid models: {valid}")
            self.model_name = "large-v3"
            mlx_model = self.MLX_MODELS["large-v3"]

        result = mlx_whisper.transcribe(
            audio,
            path_or_hf_repo=mlx_model,
            language=self.language,
        )
        return result.get("text", "").strip()

    def _transcribe_faster_whisper(self, audio: np.ndarray) -> str:
        segments, info = self._model.transcribe(
            audio,
            language=self.language,
            vad_filter=True,
        )
        text_parts = [segment.text.strip() for segment in segments]
        return " ".join(text_parts).strip()

    def _transcribe_openai(self, audio_bytes: bytes) -> str:
        """Upload the WAV payload as-is; the API resamples on its side."""
        if not self._api_key:
            raise TranscriptionError(
                "No OpenAI API key configured (set transcription.openai_api_key or OPENAI_API_KEY)"
            )

        import requests

        data = {"model": self.openai_model}
        if self.language:
            data["language"] = self.language
        try:
            response = requests.post(
                OPENAI_TRANSCRIBE_URL,
                headers={"Authorization": f"Bearer {self._api_key}"},
                files={"file": ("recording.wav", audio_bytes, "audio/wav")},
                data=data,
                timeout=30,
            )
        except requests.Timeout as e:
            raise TranscriptionError("OpenAI transcription timed out") from e
        except requests.ConnectionError as e:
            raise TranscriptionError("Cannot reach OpenAI API") from e

        if response.status_code >= 400:
            raise TranscriptionError(self._describe_http_error(response))
        try:
            return (response.json().get("text") or "").strip()
        except (ValueError, AttributeError) as e:
            raise TranscriptionError("Invalid response from OpenAI transcription") from e

    @staticmethod
    def _describe_http_error(response) -> str:
        status = response.status_code
        try:
            detail = response.json().get("error", {}).get("message", "")
        except (ValueError, AttributeError):
            detail = response.text
        print(f"OpenAI transcription error: HTTP {status}: {detail}")
        if status == 401:
            return "Invalid OpenAI API key"
        if status == 429:
            return "OpenAI rate limited"
        return f"OpenAI transcription error: HTTP {status}"
