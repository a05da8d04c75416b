"""SSH port-forward through a bastion host."""

import socket
import subprocess
import tempfile
import time
from contextlib import contextmanager
from typing import Iterator, List

from ecsdeployer.errors import DeployerError
from ecsdeployer.errors_catalog import actionable_error
from ecsdeployer.models import TunnelEndpoint


class TunnelService:
    """Opens ``ssh -N -L`` to reach a database that only the bastion can see."""

    LOCAL_HOST = "127.0.0.1"
    POLL_INTERVAL_SECONDS = 0.5
    TERMINATE_GRACE_SECONDS = 5

    def __init__(self, logger, console, subprocess_module=subprocess, socket_module=socket):
        self.logger = logger
        self.console = console
        self.subprocess = subprocess_module
        self.socket = socket_module

    def build_command(self, endpoint: TunnelEndpoint) -> List[str]:
        cmd = [
            "ssh",
            "-N",
            "-L",
            f"{self.LOCAL_HOST}:{endpoint.local_port}:{endpoint.db_host}:{endpoint.db_port}",
            "-p",
            str(endpoint.bastion_port),
            "-o",
            "ExitOnForwardFailure=yes",
            "-o",
            "BatchMode=yes",
            "-o",
            "ServerAliveInterval=30",
            "-o",
            f"StrictHostKeyChecking={endpoint.strict_host_key_checking}",
        ]
        if endpoint.identity_file:
            cmd.extend(["-i", endpoint.identity_file])
        cmd.append(f"{endpoint.bastion_user}@{endpoint.bastion_host}")
        return cmd

    def _port_is_open(self, port: int) -> bool:
        try:
            with self.socket.create_connection((self.LOCAL_HOST, port), timeout=1):
                return True
        except OSError:
            return False

    @staticmethod
    def _read_stderr(stderr_file) -> str:
        if stderr_file is None:
            return ""
        stderr_file.seek(0)
        return (stderr_file.read() or "").strip()

    def wait_until_ready(self, process, endpoint: TunnelEndpoint, timeout: float, stderr_file=None):
        deadline = time.monotonic() + timeout
        while True:
            if process.poll() is not None:
                reason = self._read_stderr(stderr_file) or f"ssh exited with code {process.returncode}"
                raise DeployerError(
                    actionable_error("tunnel_failed", bastion=endpoint.bastion_host, reason=reason)
                )
            if self._port_is_open(endpoint.local_port):
                return
            if time.monotonic() >= deadline:
                raise DeployerError(
                    actionable_error(
                        "tunnel_failed",
                        bastion=endpoint.bastion_host,
                        reason=f"local port {endpoint.local_port} not reachable after {timeout}s",
                    )
                )
            time.sleep(self.POLL_INTERVAL_SECONDS)

    def close(self, process):
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.TERMINATE_GRACE_SECONDS)
        except self.subprocess.TimeoutExpired:
            self.logger.warning("SSH tunnel did not stop in time; killing it.")
            process.kill()
            process.wait()

    @contextmanager
    def open(self, endpoint: TunnelEndpoint, timeout: float = 30.0) -> Iterator[int]:
        """Yield the local port while the tunnel is up; always tear it down."""
        if self._port_is_open(endpoint.local_port):
            raise DeployerError(
                f"Local port {endpoint.local_port} is already in use. Choose another `local_port`."
            )

        cmd = self.build_command(endpoint)
        self.console.print(
            f"[blue]Opening SSH tunnel via {endpoint.bastion_host} to "
            f"{endpoint.db_host}:{endpoint.db_port}...[/blue]"
        )
        self.logger.debug("Executing: %s", " ".join(cmd))
        # Read only on failure, so it must not be a pipe that can fill up.
        stderr_file = tempfile.TemporaryFile(mode="w+", encoding="utf-8")
        try:
            process = self.subprocess.Popen(
                cmd,
                stdin=self.subprocess.DEVNULL,
                stdout=self.subprocess.DEVNULL,
                stderr=stderr_file,
                text=True,
            )
        except FileNotFoundError as exc:
            stderr_file.close()
            raise DeployerError("Required command not found: ssh. Please install it and try again.") from exc

        try:
            self.wait_until_ready(process, endpoint, timeout, stderr_file)
            self.console.print(f"[green]Tunnel ready on {self.LOCAL_HOST}:{endpoint.local_port}.[/green]")
            yield endpoint.local_port
        finally:
            self.close(process)
            stderr_file.close()
            self.logger.info("SSH tunnel closed.")
