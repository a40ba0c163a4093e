"""
Shared fixtures: an in-process Docker stand-in, a scripted model and a
recording audit sink.

The fake container's filesystem is the host filesystem under the test's
temporary directory, and ``exec_run`` runs real local processes, so tools
and lifecycle commands are exercised end to end without a Docker daemon.
"""

import copy
import io
import os
import signal
import subprocess
import sys
import tarfile
import threading
import time
from pathlib import Path

import pytest
from docker.errors import NotFound

# Make the project root importable without installing the package
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from edit_worker.sandbox.executor import SandboxToolExecutor  # noqa: E402
from edit_worker.sandbox.preview import PID_FILENAME, SandboxManager  # noqa: E402
from edit_worker.sandbox.registry import SandboxRegistry  # noqa: E402
from edit_worker.schemas import ModelTurn, ToolCallRequest, ToolOutcome  # noqa: E402


# =============================================================================
# Docker stand-ins
# =============================================================================

class FakeContainer:
    def __init__(self, name, root, ports, host_port_start=49153):
        self.name = name
        self.id = f"id-{name}"
        self.root = Path(root)
        self.status = "running"
        self.removed = False
        self.exec_log = []
        self.attrs = {
            "NetworkSettings": {
                "Ports": {
                    binding: [{"HostIp": "0.0.0.0", "HostPort": str(host_port_start + i)}]
                    for i, binding in enumerate(ports)
                }
            }
        }

    def reload(self):
        if self.removed:
            raise NotFound(f"No such container: {self.name}")

    def start(self):
        self.status = "running"

    def stop(self):
        self.status = "exited"

    def exec_run(self, cmd, workdir=None, demux=False, **kwargs):
        if self.removed:
            raise NotFound(f"No such container: {self.name}")
        self.exec_log.append(cmd)
        if isinstance(cmd, str):
            cmd = ["sh", "-c", cmd]
        if workdir and not os.path.isdir(workdir):
            message = f"workdir {workdir} does not exist".encode()
            return (126, (None, message)) if demux else (126, message)

        proc = subprocess.run(
            cmd,
            cwd=workdir or str(self.root),
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=60,
        )
        if demux:
            return proc.returncode, (proc.stdout or None, proc.stderr or None)
        return proc.returncode, proc.stdout + proc.stderr

    def put_archive(self, path, data):
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            for member in tar.getmembers():
                target = (Path(path) / member.name).resolve()
                if self.root.resolve() not in target.parents:
                    raise AssertionError(f"write outside sandbox root: {target}")
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(tar.extractfile(member).read())
        return True

    def get_archive(self, path):
        target = Path(path)
        if not target.exists():
            raise NotFound(f"Could not find the file {path} in container {self.name}")
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            tar.add(str(target), arcname=target.name)
        return iter([buffer.getvalue()]), {"name": target.name}


class FakeContainers:
    def __init__(self, root):
        self.root = root
        self.by_name = {}
        self.run_count = 0
        self.run_delay = 0.0
        self._lock = threading.Lock()

    def get(self, name):
        container = self.by_name.get(name)
        if container is None or container.removed:
            raise NotFound(f"No such container: {name}")
        return container

    def run(self, **kwargs):
        if self.run_delay:
            time.sleep(self.run_delay)
        with self._lock:
            self.run_count += 1
            container = FakeContainer(kwargs["name"], self.root, list(kwargs.get("ports") or {}))
            self.by_name[container.name] = container
        return container


class FakeImages:
    def get(self, name):
        return name

    def pull(self, name):
        return name


class FakeDockerClient:
    def __init__(self, root):
        self.containers = FakeContainers(root)
        self.images = FakeImages()


# =============================================================================
# Model and sink stand-ins
# =============================================================================

class ScriptedLLM:
    """Returns pre-scripted turns (or raises pre-scripted errors) in order."""

    def __init__(self, turns=None, default=None):
        self.turns = list(turns or [])
        self.default = default
        self.calls = []

    def invoke_tools(self, messages, tools):
        self.calls.append(copy.deepcopy(messages))
        if self.turns:
            turn = self.turns.pop(0)
        elif self.default is not None:
            turn = self.default(len(self.calls))
        else:
            turn = ModelTurn(text="Done.")
        if isinstance(turn, Exception):
            raise turn
        return turn


class RecordingSink:
    def __init__(self):
        self.batches = []

    def submit(self, thread_id, messages):
        self.batches.append((thread_id, list(messages)))

    def close(self, timeout=None):
        pass


class RecordingExecutor:
    """Tool executor that echoes its arguments, optionally after a delay."""

    def __init__(self):
        self.executed = []
        self._lock = threading.Lock()

    def execute(self, invocation):
        delay = invocation.arguments.get("delay", 0)
        if delay:
            time.sleep(delay)
        with self._lock:
            self.executed.append(invocation.call_id)
        outcome = ToolOutcome.ok(echo=invocation.arguments)
        invocation.outcome = outcome
        return outcome


def tool_turn(*calls, text=None):
    """Build a model turn proposing ``(name, arguments_json)`` tool calls."""
    return ModelTurn(
        text=text,
        tool_calls=[
            ToolCallRequest(id=f"call_{i}", name=name, arguments=arguments)
            for i, (name, arguments) in enumerate(calls)
        ],
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def runtime_dir(tmp_path):
    path = tmp_path / "run"
    path.mkdir()
    yield path
    pid_file = path / PID_FILENAME
    if pid_file.exists():
        try:
            os.kill(int(pid_file.read_text().strip()), signal.SIGTERM)
        except (ValueError, ProcessLookupError, PermissionError):
            pass


@pytest.fixture
def docker_client(tmp_path):
    return FakeDockerClient(tmp_path)


@pytest.fixture
def registry(docker_client, workspace):
    return SandboxRegistry(
        client_factory=lambda: docker_client,
        workdir=str(workspace),
        exposed_ports=[3001, 8080],
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def manager(registry, runtime_dir, sleeps):
    return SandboxManager(
        registry,
        healthcheck="true",
        startup_grace_seconds=3.0,
        probe_backoff_seconds=2.0,
        runtime_dir=str(runtime_dir),
        sleep=sleeps.append,
    )


@pytest.fixture
def handle(manager):
    return manager.acquire("proj-1")


@pytest.fixture
def executor(manager, handle, workspace):
    return SandboxToolExecutor(manager, handle, default_cwd=str(workspace), command_timeout=30)


@pytest.fixture
def config(monkeypatch, workspace):
    """Worker configuration pointing the app at the test workspace."""
    from edit_worker.config import Config

    env = {
        "WORKER_API_SECRET": "test-secret",
        "CONTROL_API_URL": "http://control.test/api",
        "AZURE_OPENAI_API_KEY": "test-key",
        "AZURE_OPENAI_ENDPOINT": "https://example.openai.azure.com/",
        "AZURE_OPENAI_DEPLOYMENT_NAME": "gpt-test",
        "SANDBOX_WORKDIR": str(workspace),
        "SANDBOX_APP_DIR": str(workspace),
        "SANDBOX_APP_PORT": "3001",
        "SANDBOX_EXPOSED_PORTS": "3001,8080",
        "SANDBOX_START_COMMAND": "sleep 30",
        "SANDBOX_SEED_TEMPLATE": "false",
        "AGENT_MAX_STEPS": "5",
    }
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    monkeypatch.delenv("PREVIEW_CACHE_FILE", raising=False)
    return Config()


@pytest.fixture
def services(config, manager):
    from edit_worker.orchestrator import WorkerServices
    from edit_worker.status import PreviewCache, StatusReconciler

    return WorkerServices(
        config=config,
        manager=manager,
        reconciler=StatusReconciler(PreviewCache(), manager),
        sink=RecordingSink(),
        llm=ScriptedLLM(),
    )
