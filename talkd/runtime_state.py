"""Advisory liveness record and well-known paths for the running daemon.

The record ({pid, cwd, started_at}) and the control socket are two
independent hints that a daemon is running; either can go stale after a
crash. Readers always re-check the pid against the process table and delete
a record whose process is gone.
"""

import json
import os
from datetime import datetime, timezone
from typing import Optional

STATE_DIR = os.path.expanduser("~/.talkd")
STATE_FILE = os.path.join(STATE_DIR, "runtime-state.json")
CONTROL_SOCK_PATH = os.path.join(STATE_DIR, ".control.sock")
LOG_DIR = os.path.join(STATE_DIR, "logs")


def ensure_state_dir() -> None:
    os.makedirs(STATE_DIR, mode=0o700, exist_ok=True)


def is_process_alive(pid: int) -> bool:
    """Signal-0 existence check. Races with process exit; best effort only."""
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else
    except OSError:
        return False
    return True


def save_runtime_state(cwd: str, path: str = STATE_FILE) -> dict:
    """Write the liveness record for this process."""
    state = {
        "pid": os.getpid(),
        "cwd": cwd,
        "started_at": datetime.now(timezone.utc).isoformat(),
    }
    os.makedirs(os.path.dirname(path), mode=0o700, exist_ok=True)
    with open(path, "w") as f:
        json.dump(state, f, indent=2)
    return state


def read_runtime_state(path: str = STATE_FILE) -> Optional[dict]:
    """Return the record if its process is alive, else delete it and return None."""
    if not os.path.exists(path):
        return None
    try:
        with open(path) as f:
            state = json.load(f)
        pid = state["pid"]
    except (OSError, ValueError, KeyError, TypeError):
        remove_runtime_state(path)
        return None

    if not is_process_alive(pid):
        remove_runtime_state(path)
        return None
    return state


def remove_runtime_state(path: str = STATE_FILE) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        print(f"Runtime state: could not remove {path}: {e}")
