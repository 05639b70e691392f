"""
Agent Manager X - CLI entry point.
Provides start, stop, status, list, stream and kill subcommands.
"""

import argparse
import json
import logging
import os
import signal
import subprocess
import sys
import threading

from .constants import CONFIG_DIR, DEFAULT_PORT, LOCALHOST, PID_FILE_NAME, STREAM_INTERVAL

PKG_DIR = os.path.dirname(os.path.abspath(__file__))
PID_FILE = os.path.join(CONFIG_DIR, PID_FILE_NAME)

from .__version__ import __repository__, __version__  # noqa: E402

BANNER = f"""\
  Agent Manager X v{__version__}
  {__repository__}
  Open http://localhost:{{port}}
"""

STATUS_ICONS = {
    "thinking": "◆",
    "processing": "●",
    "waiting": "◉",
    "idle": "○",
    "stale": "·",
}


def _read_pid_file() -> int | None:
    """Read PID from the PID file, returning None if corrupt or missing."""
    if not os.path.exists(PID_FILE):
        return None
    try:
        with open(PID_FILE, encoding="utf-8") as f:
            return int(f.read().strip())
    except (ValueError, OSError):
        return None


def _write_pid_file(pid: int) -> None:
    os.makedirs(os.path.dirname(PID_FILE), exist_ok=True)
    with open(PID_FILE, "w", encoding="utf-8") as f:
        f.write(str(pid))


def _remove_pid_file() -> None:
    if os.path.exists(PID_FILE):
        os.remove(PID_FILE)


def _run_server(port: int) -> None:
    import uvicorn

    uvicorn.run(
        "agent_manager.dashboard_api:app",
        host=LOCALHOST,
        port=port,
        log_level="warning",
    )


def cmd_serve(args):
    """Internal: run the uvicorn server in-process (used by --background)."""
    _run_server(args.port)


def cmd_start(args):
    """Start the dashboard server."""
    # Check if already running
    old_pid = _read_pid_file()
    if old_pid is not None:
        try:
            os.kill(old_pid, 0)
            print(f"Agent Manager X already running (PID {old_pid}) at http://localhost:{args.port}")
            return
        except OSError:
            _remove_pid_file()

    if args.background:
        # Re-invoke as a module so relative imports work
        cmd = [
            sys.executable,
            "-m",
            "agent_manager.agent_dashboard",
            "_serve",
            "--port",
            str(args.port),
        ]
        proc = subprocess.Popen(  # pylint: disable=consider-using-with
            cmd,
            cwd=os.path.dirname(PKG_DIR),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        _write_pid_file(proc.pid)
        print(f"Agent Manager X started in background (PID {proc.pid})")
        print(BANNER.format(port=args.port))
    else:
        # Foreground - write PID for status checks, run directly
        _write_pid_file(os.getpid())
        try:
            print(BANNER.format(port=args.port))
            _run_server(args.port)
        finally:
            _remove_pid_file()


def cmd_stop(_args):
    """Stop the dashboard server."""
    pid = _read_pid_file()
    if pid is None:
        print("Agent Manager X is not running (no PID file found).")
        return

    try:
        os.kill(pid, signal.SIGTERM)
        print(f"Agent Manager X stopped (PID {pid}).")
    except OSError as e:
        print(f"Could not stop process {pid}: {e}")
    finally:
        _remove_pid_file()


def cmd_status(_args):
    """Check if the dashboard is running."""
    pid = _read_pid_file()
    if pid is None:
        print("Agent Manager X is not running.")
        return

    try:
        os.kill(pid, 0)
        print(f"Agent Manager X is running (PID {pid})")
    except OSError:
        print("PID file exists but process is not running. Cleaning up.")
        _remove_pid_file()


def format_session_line(session: dict) -> str:
    """One human-readable row of ``list`` output from a camelCase session dict."""
    icon = STATUS_ICONS.get(session["status"], "?")
    branch = f" ({session['gitBranch']})" if session.get("gitBranch") else ""
    line = (
        f"  {icon} {session['status']:<10} {session['agentType']:<8} "
        f"{session['projectName']}{branch}  PID {session['pid']}  {session['timeAgo']}"
    )
    if session.get("lastMessage"):
        preview = " ".join(session["lastMessage"].split())
        line += f"\n      {preview[:100]}"
    return line


def cmd_list(args):
    """Run one detection pass and print the result."""
    from .aggregator import SessionDetectionService
    from .errors import ScanFailure
    from .schemas import SessionsResponse

    try:
        result = SessionDetectionService().get_all_sessions()
    except ScanFailure as e:
        print(f"Could not read the process table: {e}", file=sys.stderr)
        sys.exit(1)
    payload = SessionsResponse.from_result(result).model_dump(by_alias=True)

    if args.json:
        print(json.dumps(payload, indent=2))
        return

    if not payload["sessions"] and not payload["backgroundSessions"]:
        print("No agent sessions running.")
        return
    counts = ", ".join(f"{agent} {count}" for agent, count in payload["agentCounts"].items())
    print(f"{payload['totalCount']} sessions ({payload['waitingCount']} waiting) - {counts}")
    for session in payload["sessions"]:
        print(format_session_line(session))
    if payload["backgroundSessions"]:
        print("Background:")
        for session in payload["backgroundSessions"]:
            print(format_session_line(session))


def cmd_stream(args):
    """Write one JSON result line per refresh pass until the reader closes stdout."""
    from .aggregator import SessionDetectionService
    from .refresh import RefreshCoordinator
    from .stream import StreamWriter

    writer = StreamWriter()
    closed = threading.Event()
    coordinator = RefreshCoordinator(SessionDetectionService(), interval=args.interval)

    def _on_publish(snapshot):
        if not writer.write_result(snapshot):
            closed.set()

    coordinator.add_listener(_on_publish)
    if not writer.set_visibility(True):
        return
    coordinator.start()
    try:
        closed.wait()
    except KeyboardInterrupt:
        pass
    finally:
        coordinator.stop()


def cmd_kill(args):
    """Kill a session process and its descendants."""
    from .actions import SessionActions
    from .errors import ActionFailure
    from .process_inventory import ProcessInventory

    try:
        SessionActions(ProcessInventory()).kill_session(args.pid)
    except ActionFailure as e:
        print(f"Could not kill process {args.pid}: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Killed PID {args.pid}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="agent-manager",
        description="Agent Manager X - monitor your Claude, Codex and OpenCode sessions",
        epilog=(
            "Examples:\n"
            "  agent-manager start                  Start in foreground\n"
            "  agent-manager start --background     Start as background process\n"
            "  agent-manager start -b --port 8080   Background on custom port\n"
            "  agent-manager stop                   Stop the background server\n"
            "  agent-manager list --json            Print detected sessions as JSON\n"
            "  agent-manager stream --interval 2    Stream results for the floating viewer\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    start_p = sub.add_parser("start", help="Start the dashboard web server")
    start_p.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port to listen on (default: {DEFAULT_PORT})",
    )
    start_p.add_argument(
        "--background", "-b", action="store_true", help="Run as a background process (detached)"
    )

    sub.add_parser("stop", help="Stop the background dashboard server")
    sub.add_parser("status", help="Check if the dashboard server is running")

    list_p = sub.add_parser("list", help="Detect sessions once and print them")
    list_p.add_argument("--json", action="store_true", help="Print the camelCase JSON result")

    stream_p = sub.add_parser("stream", help="Write line-delimited JSON results to stdout")
    stream_p.add_argument(
        "--interval",
        type=float,
        default=STREAM_INTERVAL,
        help=f"Seconds between refresh passes (default: {STREAM_INTERVAL})",
    )

    kill_p = sub.add_parser("kill", help="Kill a session process and its descendants")
    kill_p.add_argument("pid", type=int)

    serve_p = sub.add_parser("_serve", help=argparse.SUPPRESS)
    serve_p.add_argument("--port", type=int, default=DEFAULT_PORT)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if not args.command:
        parser.print_help()
        return

    {
        "start": cmd_start,
        "_serve": cmd_serve,
        "stop": cmd_stop,
        "status": cmd_status,
        "list": cmd_list,
        "stream": cmd_stream,
        "kill": cmd_kill,
    }[args.command](args)


if __name__ == "__main__":
    main()
