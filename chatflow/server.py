"""
Background process control for the chatflow gateway.

`chatflow start` forks `python -m chatflow.proxy.server` with its settings in
the environment, records the PID and waits until the port answers.
"""

import os
import socket
import subprocess
import sys
import time
from collections import deque

import psutil

from chatflow.config import Config
from chatflow.proxy.token_manager import ANTIGRAVITY_TOKEN_PATH, GEMINI_TOKEN_PATH
from chatflow.utils import get_pid_path, get_log_path, is_gateway_running

STARTUP_POLLS = 10
STARTUP_POLL_INTERVAL = 0.3


def oauth_credentials() -> dict[str, bool]:
    """Which OAuth backends have a refresh token to fall back on."""
    return {
        "gemini": bool(os.environ.get("GEMINI_REFRESH_TOKEN")) or GEMINI_TOKEN_PATH.exists(),
        "antigravity": bool(os.environ.get("ANTIGRAVITY_REFRESH_TOKEN")) or ANTIGRAVITY_TOKEN_PATH.exists(),
    }


class GatewayProcess:
    """The gateway as a detached child process tracked through a PID file."""

    def __init__(self, config: Config | None = None):
        self.config = config or Config()
        self.pid_path = get_pid_path()
        self.log_path = get_log_path()

    def is_running(self) -> tuple[bool, int | None]:
        return is_gateway_running()

    def _gateway_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(HOST=self.config.gateway_host, PORT=str(self.config.gateway_port),
                   LOG_LEVEL=self.config.log_level)
        return env

    def _port_open(self) -> bool:
        try:
            with socket.create_connection((self.config.gateway_host, self.config.gateway_port), timeout=0.5):
                return True
        except OSError:
            return False

    def start(self) -> tuple[bool, str]:
        """
        Launch the gateway and wait for it to listen.

        A child still alive after the startup window counts as started even
        if the port is not open yet.

        Returns:
            tuple: (success, message)
        """
        running, pid = self.is_running()
        if running:
            return False, f"Gateway already running (PID: {pid})"

        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.log_path, "a") as log_file:
                child = subprocess.Popen(
                    [sys.executable, "-m", "chatflow.proxy.server"],
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    env=self._gateway_env(),
                    start_new_session=True,
                )
        except OSError as e:
            return False, f"Failed to start gateway: {e}"

        self.pid_path.write_text(str(child.pid))

        for _ in range(STARTUP_POLLS):
            time.sleep(STARTUP_POLL_INTERVAL)
            code = child.poll()
            if code is not None:
                self.pid_path.unlink(missing_ok=True)
                return False, f"Gateway exited during startup (code {code}), see {self.log_path}"
            if self._port_open():
                break

        return True, f"Gateway started (PID: {child.pid})"

    def stop(self) -> tuple[bool, str]:
        running, pid = self.is_running()
        if not running:
            return False, "Gateway is not running"

        try:
            process = psutil.Process(pid)
            process.terminate()
            _, alive = psutil.wait_procs([process], timeout=5)
            for leftover in alive:
                leftover.kill()
        except psutil.NoSuchProcess:
            return False, "Gateway process not found (already stopped?)"
        except psutil.Error as e:
            return False, f"Failed to stop gateway: {e}"
        finally:
            self.pid_path.unlink(missing_ok=True)

        return True, "Gateway stopped"

    def restart(self) -> tuple[bool, str]:
        if self.is_running()[0]:
            self.stop()
        return self.start()

    def get_status(self) -> dict:
        running, pid = self.is_running()
        status = {
            "running": running,
            "pid": pid,
            "url": self.config.gateway_url,
            "log_file": str(self.log_path),
            "credentials": oauth_credentials(),
        }

        if running:
            try:
                process = psutil.Process(pid)
                with process.oneshot():
                    status["uptime"] = time.time() - process.create_time()
                    status["memory_mb"] = round(process.memory_info().rss / 1024 / 1024, 1)
            except psutil.NoSuchProcess:
                status.update(running=False, pid=None)

        return status

    def tail_logs(self, lines: int = 50) -> list[str]:
        if not self.log_path.exists():
            return ["No log file found."]

        try:
            with open(self.log_path, "r") as f:
                return list(deque(f, maxlen=lines))
        except OSError as e:
            return [f"Error reading log file: {e}"]


def show_status_rich(console, status: dict) -> None:
    """Print gateway state and OAuth credential availability."""
    import datetime

    from rich.panel import Panel
    from rich.table import Table

    table = Table(show_header=False, box=None, padding=(0, 1))

    if status["running"]:
        state = f"[green]● Running[/green] [dim]PID {status['pid']}[/dim]"
        if status.get("uptime"):
            state += f" [dim]up {datetime.timedelta(seconds=int(status['uptime']))}[/dim]"
        table.add_row("Gateway", state)
        table.add_row("URL", status["url"])
        if status.get("memory_mb"):
            table.add_row("Memory", f"{status['memory_mb']} MB")
    else:
        table.add_row("Gateway", "[red]○ Stopped[/red]")

    for name, present in status.get("credentials", {}).items():
        table.add_row(f"{name} token", "[green]✓ found[/green]" if present else "[dim]not set[/dim]")

    console.print(Panel(table, title="[bold]chatflow[/bold]", border_style="blue"))
