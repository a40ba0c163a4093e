"""
Sandbox module for running per-project preview applications in Docker containers.

Components:
- registry: Map project keys to live containers (per-key creation locks)
- preview: Start, probe and expose the preview server; answer liveness
- executor: The closed set of agent tools run against one sandbox
- template: Starter app seeded into empty workspaces
"""

from edit_worker.sandbox.registry import (
    ProcessRef,
    SandboxHandle,
    SandboxRegistry,
    get_registry,
)
from edit_worker.sandbox.preview import (
    ProbeResult,
    SandboxManager,
    get_sandbox_manager,
)
from edit_worker.sandbox.executor import (
    SandboxToolExecutor,
    tool_definitions,
    TOOL_ARGS,
)
from edit_worker.sandbox.template import starter_files, INSTALL_COMMAND

__all__ = [
    # Registry
    "ProcessRef",
    "SandboxHandle",
    "SandboxRegistry",
    "get_registry",
    # Preview
    "ProbeResult",
    "SandboxManager",
    "get_sandbox_manager",
    # Executor
    "SandboxToolExecutor",
    "tool_definitions",
    "TOOL_ARGS",
    # Template
    "starter_files",
    "INSTALL_COMMAND",
]
