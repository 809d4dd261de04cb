"""Command-line front end: start, status and stop the talkd daemon.

Only `start` launches anything; `status` and `stop` talk to the running
daemon over the control socket and never import the audio stack.
"""

import argparse
import os
import signal
import subprocess
import sys

from talkd.control import ControlTimeoutError, DaemonUnreachableError, ProtocolError, send_command
from talkd.runtime_state import LOG_DIR, read_runtime_state, remove_runtime_state

LOG_FILE = os.path.join(LOG_DIR, "daemon.log")


def cmd_start(args) -> int:
    state = read_runtime_state()
    if state:
        print(f"talkd is already running in {state['cwd']} (pid: {state['pid']}).", file=sys.stderr)
        return 1

    cwd = os.getcwd()
    os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)
    with open(LOG_FILE, "a") as log:
        proc = subprocess.Popen(
            [sys.executable, "-m", "talkd.main"],
            cwd=cwd,
            env={**os.environ, "TALKD_CWD": cwd},
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    print(f"talkd started (pid: {proc.pid}, cwd: {cwd})")
    print(f"Log: {LOG_FILE}")
    return 0


def cmd_status(args) -> int:
    state = read_runtime_state()
    if not state:
        print("not running")
        return 1

    try:
        res = send_command("status")
    except (DaemonUnreachableError, ControlTimeoutError, ProtocolError):
        # Record says alive but the socket doesn't answer: treat as stale
        remove_runtime_state()
        print("not running (stale state cleaned up)")
        return 1

    if res.get("ok"):
        uptime = res.get("uptime")
        uptime = f"{int(uptime)}s" if isinstance(uptime, (int, float)) else "?"
        print(f"running: {res.get('cwd')} (pid: {res.get('pid')}, state: {res.get('state')}, uptime: {uptime})")
        if res.get("message"):
            print(f"  last message: {res['message']}")
    else:
        print(f"running: {state['cwd']} (pid: {state['pid']}, since: {state.get('started_at')})")
        print(f"  (daemon responded with error: {res.get('error')})")
    return 0


def cmd_stop(args) -> int:
    state = read_runtime_state()
    if not state:
        print("talkd is not running.")
        return 1

    try:
        res = send_command("stop")
    except (DaemonUnreachableError, ControlTimeoutError, ProtocolError):
        # Socket not reachable - fall back to SIGTERM
        try:
            os.kill(state["pid"], signal.SIGTERM)
        except ProcessLookupError:
            remove_runtime_state()
            print("talkd is not running (stale state cleaned up).")
            return 1
        print(f"Stopping talkd (pid: {state['pid']})...")
        return 0

    if not res.get("ok"):
        print(f"Failed to stop daemon: {res.get('error')}", file=sys.stderr)
        return 1
    print("Stopping talkd...")
    return 0


COMMANDS = {
    "start": cmd_start,
    "status": cmd_status,
    "stop": cmd_stop,
}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="talkd",
        description="Hold a hotkey, talk to your agent, hear the reply.",
    )
    parser.add_argument(
        "command", nargs="?", default="start", choices=sorted(COMMANDS),
        help="start the daemon in the background (default), show its status, or stop it",
    )
    args = parser.parse_args(argv)
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
