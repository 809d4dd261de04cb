"""Tests for audio preparation and backend dispatch in talkd/transcribe.py."""

from types import SimpleNamespace

import numpy as np
import pytest
import requests as requests_lib
from unittest.mock import MagicMock, patch

from talkd.audio import encode_wav
from talkd.transcribe import (
    OPENAI_TRANSCRIBE_URL,
    WHISPER_SAMPLE_RATE,
    Transcriber,
    TranscriptionError,
)


class TestPrepare:

    def test_resamples_to_whisper_rate(self):
        t = Transcriber()
        audio = t.prepare(encode_wav(np.zeros(44100, dtype=np.float32), 44100))
        assert len(audio) == WHISPER_SAMPLE_RATE
        assert audio.dtype == np.float32

    def test_stereo_is_mixed_down(self):
        t = Transcriber()
        stereo = np.column_stack([np.full(16000, 0.5), np.full(16000, -0.5)]).astype(np.float32)
        audio = t.prepare(encode_wav(stereo, 16000, 2))
        assert audio.ndim == 1
        assert np.allclose(audio, 0.0, atol=1e-4)


class TestTranscribe:

    def test_empty_audio_skips_model(self):
        t = Transcriber()
        t._ensure_model = MagicMock()
        assert t.transcribe(encode_wav(np.array([], dtype=np.float32), 16000)) == ""
        t._ensure_model.assert_not_called()

    def test_faster_whisper_joins_segments(self):
        t = Transcriber(language="en")
        t._model = MagicMock()
        t._model.transcribe.return_value = (
            [SimpleNamespace(text=" Hello"), SimpleNamespace(text=" world. ")],
            None,
        )
        text = t.transcribe(encode_wav(np.zeros(16000, dtype=np.float32), 16000))
        assert text == "Hello world."
        kwargs = t._model.transcribe.call_args.kwargs
        assert kwargs["language"] == "en"
        assert kwargs["vad_filter"] is True


def _response(status=200, json_body=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.json.return_value = json_body if json_body is not None else {}
    return response


def _wav():
    return encode_wav(np.zeros(16000, dtype=np.float32), 16000)


class TestOpenAIBackend:

    def test_uploads_wav_with_model_and_key(self):
        t = Transcriber(backend="openai", language="en", api_key="sk-test")
        wav = _wav()
        with patch.object(requests_lib, "post",
                          return_value=_response(json_body={"text": "  Hello there. "})) as mock_post:
            assert t.transcribe(wav) == "Hello there."
        args, kwargs = mock_post.call_args
        assert args[0] == OPENAI_TRANSCRIBE_URL
        assert kwargs["headers"] == {"Authorization": "Bearer sk-test"}
        assert kwargs["files"]["file"] == ("recording.wav", wav, "audio/wav")
        assert kwargs["data"] == {"model": "gpt-4o-mini-transcribe", "language": "en"}
        assert kwargs["timeout"] > 0

    def test_language_omitted_when_auto_detecting(self):
        t = Transcriber(backend="openai", api_key="sk-test", openai_model="whisper-1")
        with patch.object(requests_lib, "post", return_value=_response(json_body={"text": "hi"})) as mock_post:
            t.transcribe(_wav())
        assert mock_post.call_args.kwargs["data"] == {"model": "whisper-1"}

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        t = Transcriber(backend="openai")
        with patch.object(requests_lib, "post", return_value=_response(json_body={"text": "hi"})) as mock_post:
            t.transcribe(_wav())
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-env"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        t = Transcriber(backend="openai")
        with patch.object(requests_lib, "post") as mock_post:
            with pytest.raises(TranscriptionError, match="No OpenAI API key"):
                t.transcribe(_wav())
        mock_post.assert_not_called()

    def test_empty_audio_skips_request(self):
        t = Transcriber(backend="openai", api_key="sk-test")
        with patch.object(requests_lib, "post") as mock_post:
            assert t.transcribe(encode_wav(np.array([], dtype=np.float32), 16000)) == ""
        mock_post.assert_not_called()

    @pytest.mark.parametrize("status,expected", [
        (401, "Invalid OpenAI API key"),
        (429, "OpenAI rate limited"),
        (500, "OpenAI transcription error: HTTP 500"),
    ])
    def test_http_errors(self, status, expected):
        t = Transcriber(backend="openai", api_key="sk-test")
        body = {"error": {"message": "nope"}}
        with patch.object(requests_lib, "post", return_value=_response(status, json_body=body)):
            with pytest.raises(TranscriptionError) as excinfo:
                t.transcribe(_wav())
        assert str(excinfo.value) == expected

    def test_timeout(self):
        t = Transcriber(backend="openai", api_key="sk-test")
        with patch.object(requests_lib, "post", side_effect=requests_lib.Timeout()):
            with pytest.raises(TranscriptionError, match="timed out"):
                t.transcribe(_wav())

    def test_unreachable(self):
        t = Transcriber(backend="openai", api_key="sk-test")
        with patch.object(requests_lib, "post", side_effect=requests_lib.ConnectionError()):
            with pytest.raises(TranscriptionError, match="Cannot reach"):
                t.transcribe(_wav())

    def test_no_local_model_is_loaded(self):
        t = Transcriber(backend="openai", api_key="sk-test")
        assert t._ensure_model() == "openai"
