#!/usr/bin/env python3
"""Run dropqueue locally.

gunicorn serves the app with a single worker because the upload queue lives
in that worker's memory; threads handle concurrent requests and SSE clients.
The browser is opened once /health answers.
"""

import argparse
import os
import shutil
import signal
import socket
import subprocess
import sys
import time

import httpx

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
PID_FILE = os.path.join(PROJECT_DIR, ".gunicorn.pid")
DEFAULT_PORT = int(os.environ.get("DROPQUEUE_PORT", "8080"))
STARTUP_TIMEOUT_SECONDS = 15.0

server: subprocess.Popen | None = None


def say(msg: str) -> None:
    print(f"[dropqueue] {msg}", flush=True)


def is_listening(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        return sock.connect_ex(("127.0.0.1", port)) == 0


def open_in_browser(url: str) -> None:
    opener = shutil.which("xdg-open")
    if opener is None:
        say(f"Open {url} in your browser.")
        return
    subprocess.Popen(
        [opener, url],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


def gunicorn_command(port: int) -> list[str]:
    return [
        sys.executable, "-m", "gunicorn",
        "--bind", f"127.0.0.1:{port}",
        "--workers", "1",
        "--threads", "8",
        "--timeout", "300",
        "--pid", PID_FILE,
        "--access-logfile", "-",
        "--error-logfile", "-",
        "dropqueue:create_app()",
    ]


def healthy(base_url: str) -> bool:
    """Wait for /health to answer; False if gunicorn exits or time runs out."""
    deadline = time.monotonic() + STARTUP_TIMEOUT_SECONDS
    while time.monotonic() < deadline:
        if server is not None and server.poll() is not None:
            return False
        try:
            if httpx.get(f"{base_url}/health", timeout=1.0).is_success:
                return True
        except httpx.HTTPError:
            pass
        time.sleep(0.5)
    return False


def terminate_server() -> None:
    if server is not None and server.poll() is None:
        server.terminate()
        try:
            server.wait(timeout=10)
        except subprocess.TimeoutExpired:
            server.kill()
    if os.path.exists(PID_FILE):
        os.remove(PID_FILE)


def stop(_signum: int = 0, _frame: object = None) -> None:
    say("Stopping...")
    terminate_server()
    sys.exit(0)


def main() -> None:
    global server

    parser = argparse.ArgumentParser(description="Run the dropqueue upload client")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--no-browser", action="store_true", help="do not open a browser")
    args = parser.parse_args()

    base_url = f"http://127.0.0.1:{args.port}"
    if is_listening(args.port):
        say(f"Port {args.port} is taken; assuming dropqueue is already running.")
        if not args.no_browser:
            open_in_browser(base_url)
        return

    signal.signal(signal.SIGINT, stop)
    signal.signal(signal.SIGTERM, stop)

    say(f"Starting gunicorn on port {args.port}")
    server = subprocess.Popen(gunicorn_command(args.port), cwd=PROJECT_DIR)

    if not healthy(base_url):
        say("Server failed to start; see the output above.")
        terminate_server()
        sys.exit(1)

    say(f"Serving at {base_url} (Ctrl+C to quit)")
    if not args.no_browser:
        open_in_browser(base_url)
    server.wait()


if __name__ == "__main__":
    main()
