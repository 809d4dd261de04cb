"""Control socket server and client for out-of-process daemon control.

Newline-delimited JSON over a Unix socket at ~/.talkd/.control.sock.

Requests (client -> daemon), one per line:
    {"command": "status"}   -> pipeline state, cwd, pid, uptime
    {"command": "stop"}     -> shut the daemon down

Responses (daemon -> client), one per request line:
    {"ok": true, ...}
    {"ok": false, "error": "..."}

The socket file is advisory. A stale file left behind by a crashed daemon is
unlinked on start; a successful bind is what counts as "a daemon is running
here".
"""

import asyncio
import concurrent.futures
import inspect
import json
import os
import socket
import stat
import threading
import time
from typing import Callable, Optional

from talkd.runtime_state import CONTROL_SOCK_PATH

DEFAULT_TIMEOUT = 5.0
STOP_GRACE = 1.0  # seconds stop() waits for in-flight replies


class ProtocolError(Exception):
    """Malformed control request or response."""


class DaemonUnreachableError(ConnectionError):
    """Nothing is listening on the control socket."""


class ControlTimeoutError(TimeoutError):
    """The daemon accepted the connection but never answered."""


def _wait_for(result):
    """Resolve a handler result that may be a coroutine or a Future."""
    if isinstance(result, concurrent.futures.Future):
        return result.result()
    if inspect.isawaitable(result):
        async def _await():
            return await result
        return asyncio.run(_await())
    return result


class ControlServer:
    """JSON request/response server over a Unix socket."""

    def __init__(self, handler: Callable[[str], object], path: Optional[str] = None):
        self.handler = handler
        self.path = path or CONTROL_SOCK_PATH
        self._server: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._connections: set = set()
        self._busy: set = set()  # connections with a reply still being written
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._shutting_down = False

    @property
    def listening(self) -> bool:
        return self._server is not None

    def start(self) -> str:
        """Bind the socket and start accepting on a background thread."""
        if self._server is not None:
            return self.path

        if os.path.exists(self.path):
            os.unlink(self.path)  # stale socket from an unclean shutdown
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            server.bind(self.path)
        except OSError:
            server.close()
            raise
        os.chmod(self.path, stat.S_IRUSR | stat.S_IWUSR)  # 0o600 - owner only
        server.listen(5)
        server.settimeout(1.0)

        self._shutting_down = False
        self._server = server
        self._thread = threading.Thread(target=self._accept_loop, args=(server,), daemon=True)
        self._thread.start()
        print(f"Control server listening on {self.path}")
        return self.path

    def _accept_loop(self, server: socket.socket) -> None:
        while not self._shutting_down:
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(None)
            with self._lock:
                self._connections.add(conn)
            threading.Thread(
                target=self._handle_connection, args=(conn,), daemon=True
            ).start()

    def _handle_connection(self, conn: socket.socket) -> None:
        """Answer every complete line on a connection until the client hangs up."""
        buffer = b""
        try:
            while True:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                buffer += chunk
                # Keep the trailing partial line for the next recv
                *lines, buffer = buffer.split(b"\n")
                for line in lines:
                    if not line.strip():
                        continue
                    with self._lock:
                        self._busy.add(conn)
                    try:
                        response = self._handle_line(line)
                        conn.sendall(self._encode(response))
                    finally:
                        with self._idle:
                            self._busy.discard(conn)
                            self._idle.notify_all()
                    if self._shutting_down:
                        return
        except OSError:
            pass  # client disconnected
        finally:
            with self._lock:
                self._connections.discard(conn)
                self._busy.discard(conn)
            try:
                conn.close()
            except OSError:
                pass

    def _handle_line(self, line: bytes) -> dict:
        try:
            request = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            print(f"Control server: malformed request: {e}")
            return {"ok": False, "error": str(ProtocolError(f"malformed request: {e}"))}

        command = request.get("command") if isinstance(request, dict) else None
        if not isinstance(command, str):
            return {"ok": False, "error": "request must be an object with a string 'command'"}

        try:
            response = _wait_for(self.handler(command))
        except Exception as e:
            print(f"Control server: '{command}' failed: {e}")
            return {"ok": False, "error": str(e) or type(e).__name__}

        if not isinstance(response, dict):
            return {"ok": False, "error": f"handler returned {type(response).__name__}, expected object"}
        return response

    def _encode(self, response: dict) -> bytes:
        try:
            return json.dumps(response).encode() + b"\n"
        except (TypeError, ValueError) as e:
            return json.dumps({"ok": False, "error": f"unserializable response: {e}"}).encode() + b"\n"

    def stop(self) -> None:
        """Close the listener and remove the socket file. Safe to call twice.

        Replies already being written are allowed to finish first, so a client
        that asked the daemon to stop still gets its answer.
        """
        self._shutting_down = True
        server = self._server
        self._server = None
        if server is None:
            return
        try:
            server.close()
        except OSError:
            pass  # Socket already closed
        with self._idle:
            # Let a reply that is already being written (e.g. to "stop") reach its client
            self._idle.wait_for(lambda: not self._busy, timeout=STOP_GRACE)
            for conn in self._connections:
                try:
                    conn.close()
                except OSError:
                    pass  # Connection already closed
            self._connections.clear()
        if os.path.exists(self.path):
            try:
                os.unlink(self.path)
            except OSError:
                pass
        print("Control server stopped")


def send_command(command: str, path: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT) -> dict:
    """Send one command to the daemon and return its response.

    Raises DaemonUnreachableError if nothing is listening,
    ControlTimeoutError if no response line arrives within ``timeout``,
    and ProtocolError if the response isn't a JSON object.
    """
    target = path or CONTROL_SOCK_PATH
    deadline = time.monotonic() + timeout
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        try:
            sock.connect(target)
        except socket.timeout as e:
            raise ControlTimeoutError(f"Daemon did not accept within {timeout:g} seconds") from e
        except OSError as e:
            raise DaemonUnreachableError(f"Daemon not reachable at {target}: {e}") from e

        sock.sendall(json.dumps({"command": command}).encode() + b"\n")

        buffer = b""
        while b"\n" not in buffer:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ControlTimeoutError(f"Daemon did not respond within {timeout:g} seconds")
            sock.settimeout(remaining)
            try:
                chunk = sock.recv(4096)
            except socket.timeout as e:
                raise ControlTimeoutError(f"Daemon did not respond within {timeout:g} seconds") from e
            if not chunk:
                raise ProtocolError("Daemon closed the connection without responding")
            buffer += chunk
    finally:
        sock.close()

    line = buffer.split(b"\n", 1)[0]
    try:
        response = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid response from daemon: {line!r}") from e
    if not isinstance(response, dict):
        raise ProtocolError(f"Invalid response from daemon: {line!r}")
    return response
