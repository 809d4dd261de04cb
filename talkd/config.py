"""Configuration loader for the talkd daemon."""

import os
import yaml
from dataclasses import dataclass, field, fields
from typing import Optional

CONFIG_DIR = os.path.expanduser("~/.talkd")
CONFIG_PATH = os.path.join(CONFIG_DIR, "config.yaml")

# Project-local override, relative to the daemon's working directory
LOCAL_CONFIG_PATH = os.path.join(".talkd", "config.yaml")

DEFAULT_HOTKEY = "meta+shift+i"

@dataclass
class InputConfig:
    hotkey: str = DEFAULT_HOTKEY
    min_audio_length: float = 0.3
    cues: bool = True

@dataclass
class AudioConfig:
    input_device: Optional[int] = None
    output_device: Optional[int] = None
    sample_rate: int = 44100

@dataclass
class TranscriptionConfig:
    model: str = "large-v3-turbo"
    language: Optional[str] = None  # None = auto-detect
    device: str = "cpu"
    backend: str = "faster-whisper"  # "faster-whisper", "mlx" or "openai"
    openai_api_key: str = ""         # or OPENAI_API_KEY env var
    openai_model: str = "gpt-4o-mini-transcribe"

@dataclass
class AgentConfig:
    backend: str = "ollama"
    model: str = "qwen2.5:7b"
    url: str = "http://localhost:11434"
    system_prompt: str = (
        "You are a voice assistant. Your replies are spoken aloud, so answer "
        "in plain conversational sentences without markdown or code blocks."
    )
    timeout: float = 120.0

@dataclass
class SpeechConfig:
    engine: str = "kokoro"                 # "kokoro" (local) or "openai" (cloud)
    voice: str = "af_heart"
    speed: float = 1.0
    lang_code: str = "a"
    openai_api_key: str = ""               # or OPENAI_API_KEY env var
    openai_model: str = "gpt-4o-mini-tts"
    openai_voice: str = "alloy"

@dataclass
class PipelineConfig:
    error_reset_delay: float = 3.0

@dataclass
class Config:
    input: InputConfig = field(default_factory=InputConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)


def _read_yaml(path: str) -> dict:
    if not os.path.exists(path):
        return {}
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        print(f"Config: ignoring {path} (top level must be a mapping)")
        return {}
    return data


def _build_section(cls, name: str, data) -> object:
    """Build one config section, dropping keys the dataclass doesn't know."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        print(f"Config: section '{name}' must be a mapping, using defaults")
        data = {}
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        print(f"Config: ignoring unknown {name} keys: {', '.join(unknown)}")
    return cls(**{k: v for k, v in data.items() if k in known})


def load_config(cwd: Optional[str] = None) -> Config:
    """Load configuration from YAML, with defaults for missing values.

    The global file at ~/.talkd/config.yaml is read first; if ``cwd`` is
    given, ``<cwd>/.talkd/config.yaml`` overrides individual keys per section.
    """
    data = _read_yaml(CONFIG_PATH)
    if cwd:
        local = _read_yaml(os.path.join(cwd, LOCAL_CONFIG_PATH))
        for section, values in local.items():
            if isinstance(values, dict) and isinstance(data.get(section), dict):
                data[section] = {**data[section], **values}
            else:
                data[section] = values

    return Config(
        input=_build_section(InputConfig, 'input', data.get('input')),
        audio=_build_section(AudioConfig, 'audio', data.get('audio')),
        transcription=_build_section(TranscriptionConfig, 'transcription', data.get('transcription')),
        agent=_build_section(AgentConfig, 'agent', data.get('agent')),
        speech=_build_section(SpeechConfig, 'speech', data.get('speech')),
        pipeline=_build_section(PipelineConfig, 'pipeline', data.get('pipeline')),
    )
