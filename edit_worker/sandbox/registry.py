"""
Sandbox Registry - Map project keys to live sandbox containers.

Responsibilities:
- Resolve a project key to its container, provisioning one on first use
- Re-attach to containers that outlived a worker restart (deterministic names)
- Serialize creation per key so concurrent callers never provision twice
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import docker  # type: ignore[import-not-found]
from docker.errors import DockerException, ImageNotFound, NotFound  # type: ignore[import-not-found]

from edit_worker.errors import ProvisioningError
from edit_worker.utils import KeyedLocks, safe_container_name

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_IMAGE = "node:18-slim"
DEFAULT_WORKDIR = "/workspace"
DEFAULT_EXPOSED_PORTS = [3001]

# Resource limits for sandbox containers
MAX_MEMORY = "1g"  # npm installs need headroom
MAX_CPU = 1.0

SANDBOX_LABEL = "edit-worker.sandbox"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ProcessRef:
    """A long-running process started inside a sandbox."""
    command: str
    cwd: str
    pid: Optional[int]
    started_at: str  # ISO format


@dataclass
class SandboxHandle:
    """A live sandbox bound to one project key."""
    key: str
    container_name: str
    container: Any
    created_at: str  # ISO format
    process: Optional[ProcessRef] = None
    exposed: Dict[int, str] = field(default_factory=dict)

    @property
    def container_id(self) -> str:
        return getattr(self.container, "id", "")

    def is_running(self) -> bool:
        """Refresh the container state and report whether it is running."""
        try:
            self.container.reload()
        except NotFound:
            return False
        return self.container.status == "running"


# =============================================================================
# REGISTRY CLASS
# =============================================================================

class SandboxRegistry:
    """
    Concurrent key -> handle registry with per-key creation locks.

    Thread-safe operations for:
    - Acquiring (lookup, re-attach or provision) a sandbox
    - Looking up a sandbox without provisioning
    - Forgetting a handle whose container disappeared
    """

    def __init__(
        self,
        client_factory: Callable[[], Any] = docker.from_env,
        image: str = DEFAULT_IMAGE,
        workdir: str = DEFAULT_WORKDIR,
        exposed_ports: Optional[List[int]] = None,
    ):
        self._client_factory = client_factory
        self._client = None
        self.image = image
        self.workdir = workdir
        self.exposed_ports = list(exposed_ports or DEFAULT_EXPOSED_PORTS)

        self._lock = threading.Lock()
        self._key_locks = KeyedLocks()
        self._handles: Dict[str, SandboxHandle] = {}

    @property
    def client(self):
        """Docker client, created on first use."""
        with self._lock:
            if self._client is None:
                try:
                    self._client = self._client_factory()
                except DockerException as e:
                    raise ProvisioningError(f"Docker is not available: {e}") from e
            return self._client

    def acquire(self, key: str) -> SandboxHandle:
        """
        Return the live sandbox for ``key``, provisioning one if needed.

        Idempotent: repeated and concurrent calls for the same key return the
        same sandbox.

        Raises:
            ProvisioningError: If the container cannot be found, started or created
        """
        with self._key_locks.hold(key):
            try:
                handle = self._handles.get(key)
                if handle is not None:
                    if handle.is_running():
                        return handle
                    logger.info("Cached sandbox for %s is no longer running; re-resolving", key)
                    self._handles.pop(key, None)

                handle = self._attach(key)
                if handle is None:
                    handle = self._provision(key)
            except DockerException as e:
                raise ProvisioningError(f"Failed to provision sandbox for {key}: {e}") from e

            self._handles[key] = handle
            return handle

    def lookup(self, key: str) -> Optional[SandboxHandle]:
        """Return the sandbox for ``key`` if one exists. Never provisions."""
        handle = self._handles.get(key)
        if handle is not None:
            return handle

        try:
            container = self.client.containers.get(safe_container_name(key))
        except NotFound:
            return None
        except DockerException as e:
            logger.warning("Sandbox lookup for %s failed: %s", key, e)
            return None

        return self._wrap(key, container)

    def forget(self, key: str) -> None:
        """Drop the cached handle for ``key``."""
        with self._lock:
            self._handles.pop(key, None)

    def _attach(self, key: str) -> Optional[SandboxHandle]:
        """Re-attach to an existing container for ``key``, starting it if stopped."""
        name = safe_container_name(key)
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return None

        container.reload()
        if container.status != "running":
            logger.info("Restarting stopped sandbox container %s", name)
            container.start()
            container.reload()

        logger.info("Re-attached to sandbox container %s for %s", name, key)
        return self._wrap(key, container)

    def _provision(self, key: str) -> SandboxHandle:
        """Create a fresh sandbox container for ``key``."""
        name = safe_container_name(key)
        client = self.client

        # Pull image if needed
        try:
            client.images.get(self.image)
        except ImageNotFound:
            logger.info("Pulling sandbox image %s", self.image)
            client.images.pull(self.image)

        container = client.containers.run(
            image=self.image,
            command=["sleep", "infinity"],
            name=name,
            working_dir=self.workdir,
            ports={f"{port}/tcp": None for port in self.exposed_ports},
            mem_limit=MAX_MEMORY,
            cpu_period=100000,
            cpu_quota=int(100000 * MAX_CPU),
            environment={"HOST": "0.0.0.0", "CI": "true"},
            labels={SANDBOX_LABEL: key},
            detach=True,
        )

        logger.info("Provisioned sandbox container %s for %s", name, key)
        return self._wrap(key, container)

    def _wrap(self, key: str, container: Any) -> SandboxHandle:
        return SandboxHandle(
            key=key,
            container_name=safe_container_name(key),
            container=container,
            created_at=datetime.now().isoformat(),
        )


# =============================================================================
# MODULE-LEVEL FUNCTIONS
# =============================================================================

_registry: Optional[SandboxRegistry] = None


def get_registry() -> SandboxRegistry:
    """Get the global registry instance, built from the worker configuration."""
    global _registry
    if _registry is None:
        from edit_worker.config import get_config

        config = get_config()
        _registry = SandboxRegistry(
            image=config.sandbox_image,
            workdir=config.sandbox_workdir,
            exposed_ports=config.sandbox_exposed_ports,
        )
    return _registry
