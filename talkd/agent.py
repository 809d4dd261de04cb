"""Conversational agent backed by a local Ollama server.

The reply is streamed from /api/chat and handed back one completed segment
(paragraph) at a time, so speech for the first paragraph can start while the
model is still writing the rest.
"""

import json
import threading
from typing import Iterator, Optional

import requests

# A blank line ends a segment
SEGMENT_BREAK = "\n\n"


class AgentError(RuntimeError):
    """The agent backend failed or returned something unusable."""


def split_segments(buffer: str) -> tuple[list[str], str]:
    """Split complete segments off the front of ``buffer``.

    Returns (segments, remainder) where remainder is the unfinished tail.
    """
    segments = []
    while SEGMENT_BREAK in buffer:
        head, buffer = buffer.split(SEGMENT_BREAK, 1)
        if head.strip():
            segments.append(head.strip())
    return segments, buffer


class OllamaAgent:
    """Chat session with an Ollama model. Keeps history across prompts."""

    def __init__(self, model: str = "qwen2.5:7b", url: str = "http://localhost:11434",
                 system_prompt: Optional[str] = None, timeout: float = 120.0):
        self.model = model
        self.url = url.rstrip("/")
        self.system_prompt = system_prompt
        self.timeout = timeout
        self._history: list[dict] = []
        self._http: Optional[requests.Session] = None
        self._lock = threading.Lock()

    def _session(self) -> requests.Session:
        if self._http is None:
            print(f"Agent: new Ollama session ({self.model})")
            self._http = requests.Session()
        return self._http

    def _messages(self, text: str) -> list[dict]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend(self._history)
        messages.append({"role": "user", "content": text})
        return messages

    def prompt(self, text: str) -> Iterator[str]:
        """Send ``text`` and yield each completed reply segment in order."""
        with self._lock:
            messages = self._messages(text)
            http = self._session()

        try:
            response = http.post(
                f"{self.url}/api/chat",
                json={"model": self.model, "messages": messages, "stream": True},
                stream=True,
                timeout=self.timeout,
            )
        except requests.ConnectionError as e:
            raise AgentError(f"Cannot reach Ollama at {self.url}") from e
        except requests.Timeout as e:
            raise AgentError("Ollama request timed out") from e

        reply = []
        buffer = ""
        with response:
            if response.status_code >= 400:
                raise AgentError(f"Ollama error: HTTP {response.status_code}: {response.text.strip()}")
            try:
                for line in response.iter_lines(decode_unicode=True):
                    if not line:
                        continue
                    event = json.loads(line)
                    if event.get("error"):
                        raise AgentError(f"Ollama error: {event['error']}")
                    delta = event.get("message", {}).get("content", "")
                    if delta:
                        reply.append(delta)
                        buffer += delta
                        segments, buffer = split_segments(buffer)
                        yield from segments
                    if event.get("done"):
                        break
            except requests.RequestException as e:
                raise AgentError(f"Ollama stream interrupted: {e}") from e
            except json.JSONDecodeError as e:
                raise AgentError(f"Invalid response from Ollama: {e}") from e

        if buffer.strip():
            yield buffer.strip()

        with self._lock:
            self._history.append({"role": "user", "content": text})
            self._history.append({"role": "assistant", "content": "".join(reply).strip()})

    def dispose(self) -> None:
        """Forget the conversation and close the HTTP session."""
        with self._lock:
            self._history = []
            http, self._http = self._http, None
        if http is not None:
            http.close()
            print("Agent: session disposed")


def create_agent(backend: str = "ollama", **kwargs):
    if backend != "ollama":
        print(f"WARNING: Unknown agent backend '{backend}', falling back to ollama. "
              f"Valid backends: ollama")
    return OllamaAgent(**kwargs)
