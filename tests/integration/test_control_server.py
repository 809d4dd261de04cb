"""Integration tests for the control socket (talkd/control.py) over real Unix sockets."""

import asyncio
import concurrent.futures
import json
import os
import socket
import stat
import threading
import time

import pytest

from talkd.control import (
    ControlServer,
    ControlTimeoutError,
    DaemonUnreachableError,
    ProtocolError,
    send_command,
)


def _status_handler(command):
    if command == "status":
        return {"ok": True, "state": "idle"}
    return {"ok": False, "error": f"unknown command: {command}"}


@pytest.fixture
def sock_path(sock_dir):
    return os.path.join(sock_dir, "ctl.sock")


@pytest.fixture
def server(sock_path):
    srv = ControlServer(_status_handler, path=sock_path)
    srv.start()
    yield srv
    srv.stop()


def _raw_exchange(path, payload: bytes, lines: int = 1) -> list:
    """Send raw bytes and read back ``lines`` response lines."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(5)
        sock.connect(path)
        sock.sendall(payload)
        buffer = b""
        while buffer.count(b"\n") < lines:
            chunk = sock.recv(4096)
            if not chunk:
                break
            buffer += chunk
    return [json.loads(line) for line in buffer.split(b"\n") if line.strip()]


class TestRoundTrip:

    def test_status(self, server, sock_path):
        assert send_command("status", path=sock_path) == {"ok": True, "state": "idle"}

    def test_unknown_command(self, server, sock_path):
        resp = send_command("dance", path=sock_path)
        assert resp == {"ok": False, "error": "unknown command: dance"}

    def test_socket_is_owner_only(self, server, sock_path):
        mode = stat.S_IMODE(os.stat(sock_path).st_mode)
        assert mode == 0o600

    def test_several_requests_on_one_connection(self, server, sock_path):
        payload = b'{"command": "status"}\n{"command": "x"}\n'
        responses = _raw_exchange(sock_path, payload, lines=2)
        assert responses[0]["ok"] is True
        assert responses[1]["ok"] is False

    def test_request_split_across_writes(self, server, sock_path):
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(5)
            sock.connect(sock_path)
            for piece in (b'{"comm', b'and": "sta', b'tus"}', b"\n"):
                sock.sendall(piece)
                time.sleep(0.02)
            line = sock.recv(4096).split(b"\n")[0]
        assert json.loads(line) == {"ok": True, "state": "idle"}

    def test_blank_lines_are_skipped(self, server, sock_path):
        responses = _raw_exchange(sock_path, b'\n\n{"command": "status"}\n')
        assert responses == [{"ok": True, "state": "idle"}]


class TestBadRequests:

    def test_malformed_json(self, server, sock_path):
        responses = _raw_exchange(sock_path, b"{not json\n")
        assert responses[0]["ok"] is False
        assert "malformed" in responses[0]["error"]

    def test_missing_command(self, server, sock_path):
        responses = _raw_exchange(sock_path, b'{"cmd": "status"}\n')
        assert responses[0]["ok"] is False

    def test_server_survives_bad_request(self, server, sock_path):
        _raw_exchange(sock_path, b"[1, 2\n")
        assert send_command("status", path=sock_path)["ok"] is True


class TestHandlers:

    def test_handler_exception_becomes_error_reply(self, sock_path):
        def handler(command):
            raise RuntimeError("handler blew up")

        srv = ControlServer(handler, path=sock_path)
        srv.start()
        try:
            assert send_command("status", path=sock_path) == {"ok": False, "error": "handler blew up"}
        finally:
            srv.stop()

    def test_non_dict_reply(self, sock_path):
        srv = ControlServer(lambda command: "fine", path=sock_path)
        srv.start()
        try:
            assert send_command("status", path=sock_path)["ok"] is False
        finally:
            srv.stop()

    def test_coroutine_handler(self, sock_path):
        async def handler(command):
            await asyncio.sleep(0.01)
            return {"ok": True, "command": command}

        srv = ControlServer(handler, path=sock_path)
        srv.start()
        try:
            assert send_command("status", path=sock_path) == {"ok": True, "command": "status"}
        finally:
            srv.stop()

    def test_future_handler(self, sock_path):
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)

        def handler(command):
            return pool.submit(lambda: {"ok": True, "via": "future"})

        srv = ControlServer(handler, path=sock_path)
        srv.start()
        try:
            assert send_command("status", path=sock_path) == {"ok": True, "via": "future"}
        finally:
            srv.stop()
            pool.shutdown()


class TestLifecycle:

    def test_stale_socket_file_is_replaced(self, sock_path):
        with open(sock_path, "w") as f:
            f.write("left over from a crash")
        srv = ControlServer(_status_handler, path=sock_path)
        srv.start()
        try:
            assert send_command("status", path=sock_path)["ok"] is True
        finally:
            srv.stop()

    def test_stop_removes_socket_and_is_idempotent(self, sock_path):
        srv = ControlServer(_status_handler, path=sock_path)
        srv.start()
        assert srv.listening
        srv.stop()
        srv.stop()
        assert not srv.listening
        assert not os.path.exists(sock_path)

    def test_restart_after_stop(self, sock_path):
        srv = ControlServer(_status_handler, path=sock_path)
        srv.start()
        srv.stop()
        srv.start()
        try:
            assert send_command("status", path=sock_path)["ok"] is True
        finally:
            srv.stop()

    def test_stop_from_handler_still_answers(self, sock_path):
        def handler(command):
            threading.Thread(target=srv.stop, daemon=True).start()
            deadline = time.monotonic() + 2
            while not srv._shutting_down and time.monotonic() < deadline:
                time.sleep(0.005)
            time.sleep(0.05)  # stop() is now waiting on this reply
            return {"ok": True}

        srv = ControlServer(handler, path=sock_path)
        srv.start()
        assert send_command("stop", path=sock_path) == {"ok": True}
        deadline = time.monotonic() + 2
        while os.path.exists(sock_path) and time.monotonic() < deadline:
            time.sleep(0.01)
        assert not os.path.exists(sock_path)
        assert not srv.listening


class TestClientErrors:

    def test_nothing_listening(self, sock_path):
        with pytest.raises(DaemonUnreachableError):
            send_command("status", path=sock_path)

    def test_unreachable_is_a_connection_error(self, sock_path):
        with pytest.raises(ConnectionError):
            send_command("status", path=sock_path)

    def _one_shot_listener(self, path, reply=None):
        """Accept one connection, optionally answer with raw bytes, then hang or close."""
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        listener.bind(path)
        listener.listen(1)
        release = threading.Event()

        def serve():
            conn, _ = listener.accept()
            conn.recv(4096)
            if reply is not None:
                conn.sendall(reply)
                conn.close()
            else:
                release.wait(5)
                conn.close()
            listener.close()

        threading.Thread(target=serve, daemon=True).start()
        return release

    def test_silent_daemon_times_out(self, sock_path):
        release = self._one_shot_listener(sock_path)
        try:
            with pytest.raises(ControlTimeoutError):
                send_command("status", path=sock_path, timeout=0.2)
        finally:
            release.set()

    def test_close_without_reply(self, sock_path):
        self._one_shot_listener(sock_path, reply=b"")
        with pytest.raises(ProtocolError):
            send_command("status", path=sock_path)

    def test_invalid_json_reply(self, sock_path):
        self._one_shot_listener(sock_path, reply=b"garbage\n")
        with pytest.raises(ProtocolError):
            send_command("status", path=sock_path)

    def test_non_object_reply(self, sock_path):
        self._one_shot_listener(sock_path, reply=b"[1, 2]\n")
        with pytest.raises(ProtocolError):
            send_command("status", path=sock_path)
