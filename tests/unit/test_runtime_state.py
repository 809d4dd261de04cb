"""Tests for the liveness record in talkd/runtime_state.py."""

import json
import os
from unittest.mock import patch

from talkd.runtime_state import (
    is_process_alive,
    read_runtime_state,
    remove_runtime_state,
    save_runtime_state,
)


class TestIsProcessAlive:

    def test_own_process(self):
        assert is_process_alive(os.getpid()) is True

    def test_invalid_pids(self):
        assert is_process_alive(0) is False
        assert is_process_alive(-5) is False
        assert is_process_alive("123") is False

    def test_missing_process(self):
        with patch("talkd.runtime_state.os.kill", side_effect=ProcessLookupError):
            assert is_process_alive(424242) is False

    def test_other_users_process_counts_as_alive(self):
        with patch("talkd.runtime_state.os.kill", side_effect=PermissionError):
            assert is_process_alive(1) is True


class TestRecord:

    def test_save_then_read(self, tmp_path):
        path = str(tmp_path / "state" / "runtime-state.json")
        saved = save_runtime_state("/work/project", path=path)
        assert saved["pid"] == os.getpid()
        assert saved["cwd"] == "/work/project"
        assert saved["started_at"].endswith("+00:00")
        assert read_runtime_state(path) == saved

    def test_missing_file(self, tmp_path):
        assert read_runtime_state(str(tmp_path / "none.json")) is None

    def test_dead_pid_is_cleaned_up(self, tmp_path):
        path = tmp_path / "runtime-state.json"
        path.write_text(json.dumps({"pid": 424242, "cwd": "/x", "started_at": "t"}))
        with patch("talkd.runtime_state.is_process_alive", return_value=False):
            assert read_runtime_state(str(path)) is None
        assert not path.exists()

    def test_corrupt_file_is_cleaned_up(self, tmp_path):
        path = tmp_path / "runtime-state.json"
        path.write_text("{not json")
        assert read_runtime_state(str(path)) is None
        assert not path.exists()

    def test_missing_pid_is_cleaned_up(self, tmp_path):
        path = tmp_path / "runtime-state.json"
        path.write_text(json.dumps({"cwd": "/x"}))
        assert read_runtime_state(str(path)) is None
        assert not path.exists()

    def test_remove_is_idempotent(self, tmp_path):
        path = str(tmp_path / "runtime-state.json")
        save_runtime_state("/x", path=path)
        remove_runtime_state(path)
        remove_runtime_state(path)
        assert not os.path.exists(path)
