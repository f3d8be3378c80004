"""Process management for locally started sandbox processes."""

import os
import signal
import socket
import subprocess
import time
from pathlib import Path

from koda.utils.logger import setup_logger

logger = setup_logger()

# A started process that survives this long is considered up
STARTUP_GRACE_SECONDS = 1.0

# How much of the process log is quoted when startup fails
LOG_TAIL_BYTES = 2000


def allocate_port() -> int:
    """Ask the OS for a free loopback port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def read_log_tail(log_path: Path, max_bytes: int = LOG_TAIL_BYTES) -> str:
    try:
        with log_path.open("rb") as f:
            f.seek(0, os.SEEK_END)
            f.seek(max(0, f.tell() - max_bytes))
            return f.read().decode("utf-8", errors="replace")
    except OSError:
        return ""


class ProcessManager:
    """Starts, checks and terminates the optional per-sandbox process."""

    def start_process(
        self,
        work_dir: Path,
        command: list[str],
        log_path: Path,
        env_vars: dict[str, str] | None = None,
    ) -> subprocess.Popen[bytes]:
        """Start ``command`` with its stdout and stderr appended to ``log_path``."""
        env = os.environ.copy()
        if env_vars:
            env.update(env_vars)

        with log_path.open("ab") as log_file:
            process = subprocess.Popen(
                command,
                cwd=work_dir,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                # own process group so terminate_process reaches child processes too
                start_new_session=True,
            )
        logger.info(f"Started sandbox process {command} with PID {process.pid}")
        return process

    def wait_for_startup(
        self,
        process: subprocess.Popen[bytes],
        timeout: float,
        log_path: Path | None = None,
        poll_interval: float = 0.1,
    ) -> bool:
        """Wait until the process has stayed up for the startup grace period.

        Returns:
            True if the process is up, False if ``timeout`` elapsed first

        Raises:
            RuntimeError: If the process exits during startup
        """
        start_time = time.monotonic()
        grace = min(STARTUP_GRACE_SECONDS, timeout)

        while time.monotonic() - start_time < timeout:
            if process.poll() is not None:
                output = read_log_tail(log_path) if log_path else ""
                raise RuntimeError(
                    f"Sandbox process exited with code {process.returncode} "
                    f"during startup. output: {output}"
                )
            if time.monotonic() - start_time >= grace:
                return True
            time.sleep(poll_interval)

        return False

    def terminate_process(
        self, process: subprocess.Popen[bytes], timeout: float = 5.0
    ) -> bool:
        """Gracefully terminate a process group.

        1. Send SIGTERM
        2. Wait up to timeout seconds
        3. If still running, send SIGKILL

        Returns:
            True if the process was terminated, False if it wasn't running
        """
        if process.poll() is not None:
            return False

        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return False

        try:
            process.wait(timeout=timeout)
            return True
        except subprocess.TimeoutExpired:
            pass

        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        process.wait(timeout=timeout)

        return True
