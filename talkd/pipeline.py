"""Push-to-talk pipeline: record -> transcribe -> prompt agent -> speak.

One Pipeline instance owns the session state and is its only writer. The
hotkey thread drives press/release, a cycle thread runs transcription and
consumes the agent's reply, and a single SegmentQueue worker synthesizes
reply segments strictly in order while PlaybackScheduler overlaps their
playback in real time.

State machine:

    IDLE --press--> RECORDING --release--> TRANSCRIBING --text--> THINKING
    THINKING --first segment--> SPEAKING --all audio played--> IDLE
    too short / no speech / no reply --> IDLE (advisory message)
    any failure --> ERROR --timeout or next press--> IDLE
"""

import queue
import threading
from enum import Enum
from functools import partial
from typing import Callable, Optional

from talkd.audio import MIN_RECORDING_BYTES, encode_wav
from talkd.tts import TTS_BITS_PER_SAMPLE, TTS_CHANNELS, TTS_SAMPLE_RATE


class PipelineState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    THINKING = "thinking"
    SPEAKING = "speaking"
    ERROR = "error"


class SegmentQueue:
    """Single-consumer FIFO work queue.

    Jobs run one at a time on a dedicated worker thread, in submission order.
    The worker starts on the first submit.
    """

    def __init__(self, name: str = "segment-worker"):
        self.name = name
        self._queue: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def submit(self, job: Callable[[], None]) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
                self._thread.start()
        self._queue.put(job)

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                job()
            except Exception as e:
                print(f"Segment worker: job failed: {e}")
            finally:
                self._queue.task_done()

    def join(self) -> None:
        """Block until every submitted job has run."""
        self._queue.join()

    def stop(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                self._queue.put(None)
            self._thread = None


class Pipeline:
    """Single-flight push-to-talk session orchestrator."""

    def __init__(
        self,
        recorder,
        transcriber,
        agent,
        tts,
        scheduler,
        min_audio_length: float = 0.3,
        error_reset_delay: float = 3.0,
    ):
        self.recorder = recorder
        self.transcriber = transcriber
        self.agent = agent
        self.tts = tts
        self.scheduler = scheduler
        self.min_audio_length = min_audio_length
        self.error_reset_delay = error_reset_delay
        self.segments = SegmentQueue()

        self._state = PipelineState.IDLE
        self._message: Optional[str] = None
        self._lock = threading.RLock()
        self._subscribers: list[Callable[[PipelineState, Optional[str]], None]] = []
        self._error_timer: Optional[threading.Timer] = None
        self._failure: Optional[Exception] = None
        self._cycle_thread: Optional[threading.Thread] = None

    # -- read-only accessors --

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def message(self) -> Optional[str]:
        return self._message

    def snapshot(self) -> dict:
        with self._lock:
            return {"state": self._state.value, "message": self._message}

    def subscribe(self, callback: Callable[[PipelineState, Optional[str]], None]) -> Callable[[], None]:
        """Register a state-change observer. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    # -- transitions --

    def _set_state(self, state: PipelineState, message: Optional[str] = None) -> None:
        with self._lock:
            self._state = state
            self._message = message
            if state != PipelineState.ERROR:
                self._cancel_error_timer()
            subscribers = list(self._subscribers)
            print(f"Pipeline: {state.value}" + (f" - {message}" if message else ""))
            for callback in subscribers:
                try:
                    callback(state, message)
                except Exception as e:
                    print(f"Pipeline: state listener failed: {e}")

    def _fail(self, error: Exception) -> None:
        message = str(error) or type(error).__name__
        print(f"Pipeline error: {message}")
        with self._lock:
            self._set_state(PipelineState.ERROR, message)
            self._cancel_error_timer()
            timer = threading.Timer(self.error_reset_delay, self._clear_error)
            timer.daemon = True
            self._error_timer = timer
            timer.start()

    def report_error(self, error: Exception) -> None:
        """Surface a failure from outside the cycle (e.g. hotkey permission)."""
        self._fail(error)

    def _clear_error(self) -> None:
        with self._lock:
            if self._state == PipelineState.ERROR:
                self._set_state(PipelineState.IDLE)

    def _cancel_error_timer(self) -> None:
        if self._error_timer is not None:
            self._error_timer.cancel()
            self._error_timer = None

    # -- hotkey signals --

    def on_press(self) -> None:
        with self._lock:
            if self._state == PipelineState.ERROR:
                self._set_state(PipelineState.IDLE)
            if self._state != PipelineState.IDLE:
                print(f"Pipeline: hotkey pressed while {self._state.value}, ignoring")
                return
            self._set_state(PipelineState.RECORDING, "Recording...")
            try:
                self.recorder.start()
            except Exception as e:
                self._fail(e)

    def on_release(self) -> None:
        with self._lock:
            if self._state != PipelineState.RECORDING:
                return
            try:
                audio = self.recorder.stop()
                duration = self.recorder.get_duration(audio)
                wav = encode_wav(audio, self.recorder.sample_rate, self.recorder.channels)
            except Exception as e:
                self._fail(e)
                return

            if len(wav) < MIN_RECORDING_BYTES or duration < self.min_audio_length:
                print(f"Too short ({duration:.1f}s), ignoring")
                self._set_state(PipelineState.IDLE, "Recording too short")
                return

            print(f"Transcribing {duration:.1f}s of audio...")
            self._set_state(PipelineState.TRANSCRIBING, "Transcribing...")
            self._cycle_thread = threading.Thread(
                target=self._run_cycle, args=(wav,), name="pipeline-cycle", daemon=True
            )
            self._cycle_thread.start()

    # -- cycle --

    def _run_cycle(self, wav: bytes) -> None:
        """Transcribe, prompt the agent, and queue each reply segment for speech."""
        self._failure = None
        speaking = False
        try:
            text = (self.transcriber.transcribe(wav) or "").strip()
            if not text:
                self._set_state(PipelineState.IDLE, "No speech detected")
                return

            self._set_state(PipelineState.THINKING, f'Sent: "{text}"')
            for segment in self.agent.prompt(text):
                if self._failure is not None:
                    break
                segment = segment.strip()
                if not segment:
                    continue
                if not speaking:
                    speaking = True
                    self.scheduler.begin_session(self._on_playback_finished)
                    self._set_state(PipelineState.SPEAKING, "Generating speech...")
                self.segments.submit(partial(self._speak_segment, segment))

            if not speaking:
                self._set_state(PipelineState.IDLE, "No response from agent")
                return
        except Exception as e:
            if not speaking:
                self._fail(e)
                return
            # Audio is already scheduled; let it drain, then report
            self._record_failure(e)

        self.segments.submit(self.scheduler.end_session)

    def _speak_segment(self, segment: str) -> None:
        if self._failure is not None:
            return
        try:
            for chunk in self.tts.synthesize_stream(segment):
                self.scheduler.push_chunk(chunk, TTS_SAMPLE_RATE, TTS_CHANNELS, TTS_BITS_PER_SAMPLE)
        except Exception as e:
            print(f"Pipeline: speech failed: {e}")
            self._record_failure(e)

    def _record_failure(self, error: Exception) -> None:
        with self._lock:
            if self._failure is None:
                self._failure = error

    def _on_playback_finished(self) -> None:
        with self._lock:
            failure, self._failure = self._failure, None
            if self._state != PipelineState.SPEAKING:
                return
            if failure is not None:
                self._fail(failure)
            else:
                self._set_state(PipelineState.IDLE)

    def shutdown(self) -> None:
        with self._lock:
            self._cancel_error_timer()
        self.segments.stop()
