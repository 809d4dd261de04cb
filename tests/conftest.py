"""Shared test fixtures for talkd tests."""

import os
import shutil
import sys
import tempfile
from unittest.mock import MagicMock

import pytest

# Add project root to path so `talkd` is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Mock libraries that need system resources (PortAudio, a display server) at
# import time, before any test module imports talkd.
sys.modules.setdefault('sounddevice', MagicMock())
sys.modules.setdefault('pynput', MagicMock())
sys.modules.setdefault('pynput.keyboard', MagicMock())


@pytest.fixture
def sample_config_dict():
    """Minimal valid config dict matching the config.yaml structure."""
    return {
        "input": {"hotkey": "ctrl+shift+t", "min_audio_length": 0.5},
        "audio": {"sample_rate": 16000},
        "transcription": {"model": "base.en", "backend": "faster-whisper"},
        "agent": {"model": "llama3.2"},
        "speech": {"engine": "kokoro", "voice": "af_heart"},
        "pipeline": {"error_reset_delay": 2.0},
    }


@pytest.fixture
def tmp_config_file(tmp_path, sample_config_dict):
    """Write a temporary config YAML file and return its path."""
    import yaml
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump(sample_config_dict))
    return str(config_path)


@pytest.fixture
def sock_dir():
    """Short temp dir for Unix sockets (sun_path is limited to ~104 bytes)."""
    path = tempfile.mkdtemp(prefix="talkd-", dir="/tmp")
    yield path
    shutil.rmtree(path, ignore_errors=True)
