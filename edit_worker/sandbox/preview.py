"""
Preview Lifecycle - Start, probe and expose the application inside a sandbox.

This module handles:
- Starting the long-running preview server (non-blocking, pid-tracked)
- Tolerating repeated starts of an already-running server
- Health-probing after a grace period, with one retry
- Publishing container ports as externally reachable URLs
- Answering liveness for the status path
"""

import logging
import shlex
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from docker.errors import DockerException  # type: ignore[import-not-found]

from edit_worker.errors import ExposureError, StartError, TransientInfraError
from edit_worker.sandbox.registry import ProcessRef, SandboxHandle, SandboxRegistry


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

STARTUP_GRACE_SECONDS = 3.0
PROBE_BACKOFF_SECONDS = 2.0
HEALTHCHECK_TIMEOUT = 5  # seconds per check
DEFAULT_URL_TEMPLATE = "http://localhost:{host_port}"

PID_FILENAME = "preview-server.pid"
LOG_FILENAME = "preview-server.log"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ProbeResult:
    """Result of health-probing a freshly started server."""
    healthy: bool
    attempts: int
    detail: Optional[str] = None


def _decode(output) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return str(output)


# =============================================================================
# LIFECYCLE MANAGER
# =============================================================================

class SandboxManager:
    """
    Owns the project key -> live sandbox lifecycle.

    Acquisition is delegated to the registry; everything after that (start,
    probe, exposure, liveness) happens here. File and command activity driven
    by the agent goes through the tool executor instead.
    """

    def __init__(
        self,
        registry: SandboxRegistry,
        healthcheck: str,
        startup_grace_seconds: float = STARTUP_GRACE_SECONDS,
        probe_backoff_seconds: float = PROBE_BACKOFF_SECONDS,
        url_template: str = DEFAULT_URL_TEMPLATE,
        runtime_dir: str = "/tmp",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.healthcheck = healthcheck
        self.startup_grace_seconds = startup_grace_seconds
        self.probe_backoff_seconds = probe_backoff_seconds
        self.url_template = url_template
        self._pid_file = f"{runtime_dir.rstrip('/')}/{PID_FILENAME}"
        self._log_file = f"{runtime_dir.rstrip('/')}/{LOG_FILENAME}"
        self._sleep = sleep

    def acquire(self, key: str) -> SandboxHandle:
        """Return the live sandbox for ``key``, provisioning it on first use."""
        return self.registry.acquire(key)

    def start(self, handle: SandboxHandle, command: str, cwd: str) -> ProcessRef:
        """
        Start a long-running server in the sandbox without waiting for it.

        If the tracked server is still alive the call is a no-op that returns
        the existing process reference.

        Raises:
            StartError: If the process could not be launched
        """
        if self._process_alive(handle):
            logger.info("Server already running in sandbox %s; leaving it in place", handle.container_name)
            if handle.process is None:
                handle.process = ProcessRef(
                    command=command,
                    cwd=cwd,
                    pid=self._read_pid(handle),
                    started_at=datetime.now().isoformat(),
                )
            return handle.process

        script = (
            f"cd {shlex.quote(cwd)} || exit 1; "
            f"nohup sh -c {shlex.quote(command)} > {self._log_file} 2>&1 & "
            f"echo $! > {self._pid_file}; cat {self._pid_file}"
        )

        try:
            exit_code, output = handle.container.exec_run(["sh", "-c", script])
        except DockerException as e:
            raise StartError(f"Failed to start server in {handle.container_name}: {e}") from e

        if exit_code != 0:
            raise StartError(
                f"Failed to start server in {handle.container_name} "
                f"(exit {exit_code}): {_decode(output)[-500:]}"
            )

        pid = None
        try:
            pid = int(_decode(output).strip().splitlines()[-1])
        except (ValueError, IndexError):
            logger.warning("Could not read pid of server in %s", handle.container_name)

        handle.process = ProcessRef(command=command, cwd=cwd, pid=pid, started_at=datetime.now().isoformat())
        logger.info("Started `%s` in %s (pid %s)", command, handle.container_name, pid)
        return handle.process

    def probe(
        self,
        handle: SandboxHandle,
        healthcheck: Optional[str] = None,
        timeout: int = HEALTHCHECK_TIMEOUT,
    ) -> ProbeResult:
        """
        Wait the grace period, then health-check the server once, retrying once.

        Never raises: an unhealthy result is informational and the caller
        decides whether it is fatal.
        """
        command = healthcheck or self.healthcheck

        self._sleep(self.startup_grace_seconds)
        last_error = None
        for attempt in (1, 2):
            try:
                self._require_healthy(handle, command, timeout)
                return ProbeResult(healthy=True, attempts=attempt)
            except TransientInfraError as e:
                last_error = str(e)
                if attempt == 1:
                    logger.info("%s; retrying in %.1fs", last_error, self.probe_backoff_seconds)
                    self._sleep(self.probe_backoff_seconds)

        logs = self.server_logs(handle)
        logger.warning("Sandbox %s failed its health check. Server log tail:\n%s", handle.container_name, logs)
        return ProbeResult(healthy=False, attempts=2, detail=last_error)

    def check_health(self, handle: SandboxHandle, healthcheck: Optional[str] = None, timeout: int = HEALTHCHECK_TIMEOUT) -> bool:
        """Run the health check once, with no grace wait."""
        command = healthcheck or self.healthcheck
        try:
            exit_code, _ = handle.container.exec_run(["timeout", str(timeout), "sh", "-c", command])
        except DockerException as e:
            logger.warning("Health check in %s errored: %s", handle.container_name, e)
            return False
        return exit_code == 0

    def _require_healthy(self, handle: SandboxHandle, healthcheck: str, timeout: int) -> None:
        if not self.check_health(handle, healthcheck, timeout):
            raise TransientInfraError(f"Sandbox {handle.container_name} is not healthy yet")

    def expose_port(self, handle: SandboxHandle, port: int) -> str:
        """
        Return the externally routable URL for a published sandbox port.

        Raises:
            ExposureError: If the port is not published or the URL cannot be built
        """
        try:
            handle.container.reload()
            ports = (handle.container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
        except DockerException as e:
            raise ExposureError(f"Failed to inspect {handle.container_name}: {e}") from e

        bindings = ports.get(f"{port}/tcp")
        if not bindings:
            raise ExposureError(f"Port {port} is not published by sandbox {handle.container_name}")

        host_port = bindings[0].get("HostPort")
        if not host_port:
            raise ExposureError(f"Port {port} has no host binding in {handle.container_name}")

        try:
            url = self.url_template.format(host_port=host_port, port=port, key=handle.key)
        except (KeyError, IndexError) as e:
            raise ExposureError(f"Invalid preview URL template {self.url_template!r}: {e}") from e

        handle.exposed[port] = url
        logger.info("Exposed port %s of %s at %s", port, handle.container_name, url)
        return url

    def is_active(self, key: str) -> bool:
        """
        Report whether the sandbox for ``key`` is alive and serving.

        Uses the same health check as setup. Never provisions.
        """
        handle = self.registry.lookup(key)
        if handle is None:
            return False

        try:
            running = handle.is_running()
        except DockerException as e:
            logger.warning("Could not inspect sandbox %s: %s", handle.container_name, e)
            return False

        if not running:
            self.registry.forget(key)
            return False

        return self.check_health(handle)

    def server_logs(self, handle: SandboxHandle, tail: int = 50) -> str:
        """Tail of the preview server log, for diagnostics."""
        try:
            _, output = handle.container.exec_run(["sh", "-c", f"tail -n {int(tail)} {self._log_file} 2>/dev/null"])
        except DockerException as e:
            return f"Error getting logs: {e}"
        return _decode(output)

    def _process_alive(self, handle: SandboxHandle) -> bool:
        script = f'test -f {self._pid_file} && kill -0 "$(cat {self._pid_file})" 2>/dev/null'
        try:
            exit_code, _ = handle.container.exec_run(["sh", "-c", script])
        except DockerException:
            return False
        return exit_code == 0

    def _read_pid(self, handle: SandboxHandle) -> Optional[int]:
        try:
            _, output = handle.container.exec_run(["cat", self._pid_file])
            return int(_decode(output).strip())
        except (DockerException, ValueError):
            return None


# =============================================================================
# MODULE-LEVEL FUNCTIONS
# =============================================================================

_manager: Optional[SandboxManager] = None


def get_sandbox_manager() -> SandboxManager:
    """Get the global sandbox manager, built from the worker configuration."""
    global _manager
    if _manager is None:
        from edit_worker.config import get_config
        from edit_worker.sandbox.registry import get_registry

        config = get_config()
        _manager = SandboxManager(
            registry=get_registry(),
            healthcheck=config.sandbox_healthcheck,
            startup_grace_seconds=config.sandbox_startup_grace_seconds,
            probe_backoff_seconds=config.sandbox_probe_backoff_seconds,
            url_template=config.preview_url_template,
        )
    return _manager
