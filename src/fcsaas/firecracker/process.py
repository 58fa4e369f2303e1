"""
Firecracker process management.

Spawns one ``firecracker`` process per guest and tracks it by pid. Output
goes to a per-tenant log file rather than a pipe so a long-lived guest can
never block on a full pipe buffer.
"""

import os
import signal
import subprocess
import time
from dataclasses import dataclass, field

import psutil

from fcsaas.firecracker.naming import vm_id
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class GuestHandle:
    """Identity of a live guest: its hypervisor process and API socket."""

    pid: int
    socket_path: str
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "socket_path": self.socket_path,
            "started_at": self.started_at,
        }


class FirecrackerLauncher:
    """
    Starts, signals and inspects Firecracker processes.

    Processes spawned by this launcher are kept as ``Popen`` objects so
    their exit status is reaped; processes adopted after a restart are
    inspected through psutil.
    """

    def __init__(self, binary: str):
        self.binary = binary
        self._procs: dict[int, subprocess.Popen] = {}

    def build_command(self, tenant_id: str, socket_path: str) -> list[str]:
        return [
            self.binary,
            "--api-sock",
            socket_path,
            "--id",
            vm_id(tenant_id),
        ]

    def spawn(self, tenant_id: str, socket_path: str, log_path: str) -> int:
        """
        Start a Firecracker process.

        Returns:
            The process id.

        Raises:
            OSError: If the binary cannot be executed.
        """
        cmd = self.build_command(tenant_id, socket_path)
        logger.info(f"Starting Firecracker for {tenant_id}: {' '.join(cmd)}")

        with open(log_path, "ab") as log_file:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        self._procs[proc.pid] = proc
        return proc.pid

    def is_alive(self, pid: int) -> bool:
        """Check whether a guest process is still running (zombies count as dead)."""
        proc = self._procs.get(pid)
        if proc is not None:
            if proc.poll() is None:
                return True
            self._procs.pop(pid, None)
            return False

        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def send_signal(self, pid: int, sig: int) -> None:
        """Signal a guest process; a process that already exited is ignored."""
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            pass
        proc = self._procs.get(pid)
        if proc is not None and proc.poll() is not None:
            self._procs.pop(pid, None)

    def kill(self, pid: int) -> None:
        self.send_signal(pid, signal.SIGKILL)

    def find_guest_processes(self, socket_dir: str) -> list[tuple[int, str]]:
        """
        Find Firecracker processes whose API socket lives in ``socket_dir``.

        Returns:
            List of (pid, socket_path) pairs.
        """
        socket_dir = os.path.abspath(socket_dir)
        found = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            cmdline = proc.info.get("cmdline") or []
            if not cmdline or "firecracker" not in os.path.basename(cmdline[0]):
                continue
            try:
                sock = cmdline[cmdline.index("--api-sock") + 1]
            except (ValueError, IndexError):
                continue
            if os.path.dirname(os.path.abspath(sock)) == socket_dir:
                found.append((proc.info["pid"], sock))
        return found
