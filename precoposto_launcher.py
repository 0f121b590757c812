from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path
from socket import AF_INET, SOCK_STREAM, socket

from streamlit.web.cli import main as streamlit_cli_main

APP_TITLE = "PrecoPosto"
LOCAL_HOST = "127.0.0.1"
NETWORK_HOST = "0.0.0.0"
DEFAULT_PORT = 8501
STARTUP_TIMEOUT_SECONDS = 45
THEME_ARGS = [
    "--theme.base=light",
    "--theme.primaryColor=#15803d",
    "--theme.backgroundColor=#f4f7f2",
    "--theme.secondaryBackgroundColor=#ffffff",
    "--theme.textColor=#1f2937",
]
SERVER_BASE_ARGS = [
    "--global.developmentMode=false",
    "--browser.gatherUsageStats=false",
    "--server.headless=true",
    "--server.fileWatcherType=none",
]
DESKTOP_MODE_ENV_VAR = "PRECOPOSTO_DESKTOP_MODE"


def resolve_app_script() -> Path:
    if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
        return Path(sys._MEIPASS) / "precoposto.py"
    return Path(__file__).with_name("precoposto.py")


def parse_mode_args(argv: list[str]) -> tuple[str, list[str]]:
    """Returns the launch mode ("serve", "network" or "desktop") and the Streamlit passthrough args."""
    parser = argparse.ArgumentParser(add_help=False)
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--serve", action="store_true")
    mode_group.add_argument("--network", action="store_true")
    parsed, passthrough = parser.parse_known_args(argv)
    if parsed.serve:
        return "serve", passthrough
    if parsed.network:
        return "network", passthrough
    return "desktop", passthrough


def is_port_open(host: str, port: int) -> bool:
    with socket(AF_INET, SOCK_STREAM) as probe:
        probe.settimeout(0.3)
        return probe.connect_ex((host, port)) == 0


def choose_port(preferred_port: int = DEFAULT_PORT) -> int:
    if not is_port_open(LOCAL_HOST, preferred_port):
        return preferred_port

    with socket(AF_INET, SOCK_STREAM) as probe:
        probe.bind((LOCAL_HOST, 0))
        return int(probe.getsockname()[1])


def wait_for_streamlit(port: int, server_proc: subprocess.Popen[bytes]) -> bool:
    health_url = f"http://{LOCAL_HOST}:{port}/_stcore/health"
    deadline = time.monotonic() + STARTUP_TIMEOUT_SECONDS

    while time.monotonic() < deadline:
        if server_proc.poll() is not None:
            return False
        try:
            with urllib.request.urlopen(health_url, timeout=1.0) as response:
                if response.status == 200:
                    return True
        except (urllib.error.URLError, TimeoutError):
            pass
        time.sleep(0.25)

    return False


def stop_process(process: subprocess.Popen[bytes] | None) -> None:
    if process is None or process.poll() is not None:
        return

    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=5)


def show_error(message: str) -> None:
    print(f"{APP_TITLE}: {message}", file=sys.stderr)


def build_server_args(passthrough_args: list[str], host: str, port: int) -> list[str]:
    blocked_prefixes = (
        "--server.port",
        "--server.address",
        "--server.headless",
        "--theme.",
    )
    filtered_args = [
        arg for arg in passthrough_args if not any(arg.startswith(prefix) for prefix in blocked_prefixes)
    ]
    return [
        *SERVER_BASE_ARGS,
        f"--server.address={host}",
        f"--server.port={port}",
        *THEME_ARGS,
        *filtered_args,
    ]


def build_server_command(server_args: list[str]) -> list[str]:
    if getattr(sys, "frozen", False):
        command = [sys.executable, "--serve"]
    else:
        command = [sys.executable, str(Path(__file__).resolve()), "--serve"]
    command.extend(server_args)
    return command


def run_server_mode(streamlit_args: list[str]) -> int:
    sys.argv = ["streamlit", "run", str(resolve_app_script()), *streamlit_args]
    return streamlit_cli_main()


def run_network_mode(passthrough_args: list[str]) -> int:
    # Managers fill the form from their phones on the station network.
    return run_server_mode(build_server_args(passthrough_args, NETWORK_HOST, DEFAULT_PORT))


def run_desktop_mode(passthrough_args: list[str]) -> int:
    port = choose_port()
    server_cmd = build_server_command(build_server_args(passthrough_args, LOCAL_HOST, port))
    creation_flags = getattr(subprocess, "CREATE_NO_WINDOW", 0)
    server_proc: subprocess.Popen[bytes] | None = None

    try:
        server_env = os.environ.copy()
        server_env[DESKTOP_MODE_ENV_VAR] = "1"
        server_proc = subprocess.Popen(
            server_cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            creationflags=creation_flags,
            env=server_env,
        )

        if not wait_for_streamlit(port, server_proc):
            show_error("o servidor não iniciou.")
            return 1

        import webview

        webview.create_window(
            APP_TITLE,
            f"http://{LOCAL_HOST}:{port}/",
            width=480,
            height=900,
            min_size=(360, 640),
        )
        webview.start()
        return 0
    except Exception as exc:
        show_error(f"falha ao abrir a janela.\n\n{exc}")
        return 1
    finally:
        stop_process(server_proc)


def main() -> int:
    mode, passthrough_args = parse_mode_args(sys.argv[1:])
    if mode == "serve":
        return run_server_mode(passthrough_args)
    if mode == "network":
        return run_network_mode(passthrough_args)
    return run_desktop_mode(passthrough_args)


if __name__ == "__main__":
    raise SystemExit(main())
