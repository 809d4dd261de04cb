"""Main daemon for talkd - ties all components together."""

import os
import sys

# Ensure print output is unbuffered (visible in log files when running in background)
sys.stdout.reconfigure(line_buffering=True)
import signal
import threading
import time
from typing import Optional

from talkd import cues
from talkd.agent import create_agent
from talkd.audio import AudioRecorder
from talkd.config import DEFAULT_HOTKEY, Config, load_config
from talkd.control import ControlServer
from talkd.hotkey import HotkeyMatcher, KeyChord, PermissionDeniedError, parse_key_binding
from talkd.pipeline import Pipeline, PipelineState
from talkd.playback import PlaybackScheduler, SoundDeviceSink
from talkd.runtime_state import (
    ensure_state_dir,
    read_runtime_state,
    remove_runtime_state,
    save_runtime_state,
)
from talkd.transcribe import Transcriber
from talkd.tts import create_tts_engine


def resolve_hotkey(key_str: str) -> KeyChord:
    """Parse the configured hotkey, falling back to the default if invalid."""
    try:
        return parse_key_binding(key_str)
    except ValueError as e:
        print(f"Config: {e}, using default ({DEFAULT_HOTKEY})")
        return parse_key_binding(DEFAULT_HOTKEY)


class TalkDaemon:
    """Push-to-talk voice daemon."""

    def __init__(self, cwd: Optional[str] = None, config: Optional[Config] = None):
        self.cwd = cwd or os.environ.get("TALKD_CWD") or os.getcwd()
        self.config = config or load_config(self.cwd)
        self.started_at = time.monotonic()

        self.recorder = AudioRecorder(
            sample_rate=self.config.audio.sample_rate,
            device=self.config.audio.input_device,
        )

        self.transcriber = Transcriber(
            model_name=self.config.transcription.model,
            device=self.config.transcription.device,
            backend=self.config.transcription.backend,
            language=self.config.transcription.language,
            api_key=self.config.transcription.openai_api_key,
            openai_model=self.config.transcription.openai_model,
        )

        agent_cfg = self.config.agent
        self.agent = create_agent(
            agent_cfg.backend,
            model=agent_cfg.model,
            url=agent_cfg.url,
            system_prompt=agent_cfg.system_prompt,
            timeout=agent_cfg.timeout,
        )

        speech = self.config.speech
        if speech.engine == "openai":
            self.tts = create_tts_engine(
                "openai",
                api_key=speech.openai_api_key,
                model=speech.openai_model,
                voice=speech.openai_voice,
                speed=speech.speed,
            )
        else:
            self.tts = create_tts_engine(
                speech.engine, voice=speech.voice, speed=speech.speed, lang_code=speech.lang_code,
            )

        self.scheduler = PlaybackScheduler(SoundDeviceSink(device=self.config.audio.output_device))

        self.pipeline = Pipeline(
            recorder=self.recorder,
            transcriber=self.transcriber,
            agent=self.agent,
            tts=self.tts,
            scheduler=self.scheduler,
            min_audio_length=self.config.input.min_audio_length,
            error_reset_delay=self.config.pipeline.error_reset_delay,
        )

        self.hotkey = HotkeyMatcher(
            resolve_hotkey(self.config.input.hotkey),
            on_press=self.pipeline.on_press,
            on_release=self.pipeline.on_release,
        )

        self.control_server = ControlServer(self.handle_command)
        self._last_state = PipelineState.IDLE
        self._unsubscribe = self.pipeline.subscribe(self._on_state_change)
        self._shutdown_lock = threading.Lock()
        self._shutting_down = False
        self._stopped = threading.Event()

    # -- Control socket handler --

    def handle_command(self, command: str) -> dict:
        if command == "status":
            snapshot = self.pipeline.snapshot()
            return {
                "ok": True,
                "state": snapshot["state"],
                "message": snapshot["message"],
                "cwd": self.cwd,
                "pid": os.getpid(),
                "uptime": time.monotonic() - self.started_at,
            }

        if command == "stop":
            threading.Thread(target=self.shutdown, daemon=True).start()
            return {"ok": True}

        return {"ok": False, "error": f"unknown command: {command}"}

    def _on_state_change(self, state: PipelineState, message: Optional[str]) -> None:
        previous, self._last_state = self._last_state, state
        if not self.config.input.cues:
            return
        if state == PipelineState.RECORDING:
            cues.play_cue(cues.CUE_REC_START)
        elif previous == PipelineState.RECORDING:
            cues.play_cue(cues.CUE_REC_STOP)

    def _preload_models(self) -> None:
        """Load models in the background so the first cycle isn't slow."""
        for name, engine in (("transcriber", self.transcriber), ("tts", self.tts)):
            try:
                engine._ensure_model()
            except Exception as e:
                print(f"Preloading {name} failed: {e}")

    # -- Lifecycle --

    def _teardown(self, name: str, step) -> None:
        try:
            step()
        except Exception as e:
            print(f"Shutdown: {name} failed: {e}")

    def shutdown(self) -> None:
        """Tear everything down. Each step is independent of the others."""
        with self._shutdown_lock:
            if self._shutting_down:
                return
            self._shutting_down = True
        print("\nShutting down...")

        self._teardown("hotkey", self.hotkey.stop)
        self._teardown("agent", self.agent.dispose)
        self._teardown("control server", self.control_server.stop)
        self._teardown("runtime state", remove_runtime_state)

        self._teardown("pipeline", self.pipeline.shutdown)
        self._teardown("recorder", self.recorder.shutdown)
        self._teardown("playback", self.scheduler.close)
        self._teardown("cues", cues.close)
        self._unsubscribe()
        self._stopped.set()

    def run(self) -> int:
        """Start the daemon and block until shutdown. Returns an exit code."""
        signal.signal(signal.SIGTERM, lambda sig, frame: self.shutdown())
        signal.signal(signal.SIGINT, lambda sig, frame: self.shutdown())

        ensure_state_dir()
        existing = read_runtime_state()
        if existing and existing.get("pid") != os.getpid():
            print(f"talkd is already running in {existing.get('cwd')} (pid: {existing.get('pid')})")
            return 1

        print("=" * 50)
        print("talkd")
        print("=" * 50)
        print(f"Hotkey: {self.hotkey.label} (hold to talk)")
        print(f"Working directory: {self.cwd}")
        transcription = self.config.transcription
        stt_model = transcription.openai_model if transcription.backend == "openai" else transcription.model
        print(f"Transcription: {transcription.backend} ({stt_model})")
        print(f"Agent: {self.config.agent.backend} ({self.config.agent.model})")
        print(f"Speech: {self.config.speech.engine}")
        print("Stop with: talkd stop")
        print("=" * 50)

        self.control_server.start()
        save_runtime_state(self.cwd)

        threading.Thread(target=self._preload_models, daemon=True).start()

        try:
            self.hotkey.start()
        except PermissionDeniedError as e:
            print(f"Hotkey error: {e}")
            self.pipeline.report_error(e)
        else:
            if self.config.input.cues:
                cues.play_cue(cues.CUE_ASCENDING)
            print(f"Ready! Hold {self.hotkey.label} and speak.")

        # Poll so signal handlers get a chance to run on the main thread
        while not self._stopped.wait(0.5):
            pass
        return 0


def main():
    daemon = TalkDaemon()
    sys.exit(daemon.run())

if __name__ == "__main__":
    main()
