"""
Orchestrator for the worker's request flows.

Provides the setup, status and edit entry points on top of the sandbox
lifecycle manager, the agent step loop and the audit sink.
"""

import logging
import posixpath
import shlex
from dataclasses import dataclass
from typing import Any, Optional

from edit_worker.audit import AuditSink, get_audit_sink
from edit_worker.config import Config, get_config
from edit_worker.errors import ModelInvocationError, StartError
from edit_worker.graph import AgentStepLoop, build_system_prompt
from edit_worker.sandbox.executor import SandboxToolExecutor
from edit_worker.sandbox.preview import SandboxManager, get_sandbox_manager
from edit_worker.sandbox.registry import SandboxHandle
from edit_worker.sandbox.template import INSTALL_COMMAND, starter_files
from edit_worker.schemas import EditResult, SetupResult, StatusResult
from edit_worker.status import PreviewCache, StatusReconciler
from edit_worker.utils import KeyedLocks

logger = logging.getLogger(__name__)


# =============================================================================
# SERVICES
# =============================================================================

@dataclass
class WorkerServices:
    """Everything a request flow needs, wired once per process."""
    config: Config
    manager: SandboxManager
    reconciler: StatusReconciler
    sink: AuditSink
    llm: Any


def build_services(config: Optional[Config] = None) -> WorkerServices:
    """Wire the production services from configuration."""
    from edit_worker.llm.azure_openai_client import get_azure_client

    config = config or get_config()
    manager = get_sandbox_manager()
    return WorkerServices(
        config=config,
        manager=manager,
        reconciler=StatusReconciler(PreviewCache(config.preview_cache_file), manager),
        sink=get_audit_sink(),
        llm=get_azure_client(),
    )


# Concurrent edits to one project run one at a time
_edit_locks = KeyedLocks()

# Concurrent setups of one project share a single server launch
_setup_locks = KeyedLocks()


def _executor_for(services: WorkerServices, handle: SandboxHandle) -> SandboxToolExecutor:
    return SandboxToolExecutor(
        services.manager,
        handle,
        default_cwd=services.config.sandbox_workdir,
    )


# =============================================================================
# SETUP
# =============================================================================

def seed_workspace(services: WorkerServices, handle: SandboxHandle) -> bool:
    """
    Install the starter app if the sandbox has none.

    Returns:
        True if anything was written or installed

    Raises:
        StartError: If writing the files or installing dependencies failed
    """
    config = services.config
    if not config.sandbox_seed_template:
        return False

    executor = _executor_for(services, handle)
    app_dir = config.sandbox_app_dir
    changed = False

    has_app = executor.run_bash(f"test -f {shlex.quote(posixpath.join(app_dir, 'package.json'))}")
    if not has_app.success:
        logger.info("Seeding starter app into %s", handle.container_name)
        for relative_path, content in starter_files().items():
            outcome = executor.write_file(posixpath.join(app_dir, relative_path), content)
            if not outcome.success:
                raise StartError(f"Failed to seed {relative_path}: {outcome.error}")
        changed = True

    has_modules = executor.run_bash(f"test -d {shlex.quote(posixpath.join(app_dir, 'node_modules'))}")
    if not has_modules.success:
        logger.info("Installing dependencies in %s", handle.container_name)
        install = executor.run_bash(INSTALL_COMMAND, cwd=app_dir)
        if not install.success:
            stderr = install.payload.get("stderr", "")
            raise StartError(f"Dependency installation failed: {install.error}\n{stderr[-500:]}")
        changed = True

    return changed


def run_setup(services: WorkerServices, project_id: str) -> SetupResult:
    """
    Resolve (or create) a project's sandbox, start its server and expose it.

    Calling this again for a running project is safe: the sandbox and its
    server are reused and the same preview URL comes back.

    Raises:
        InfrastructureError: If provisioning, starting or exposing failed
    """
    config = services.config
    manager = services.manager

    with _setup_locks.hold(project_id):
        handle = manager.acquire(project_id)
        seed_workspace(services, handle)
        manager.start(handle, config.sandbox_start_command, config.sandbox_app_dir)

        # Informational only: a slow first boot still gets a preview URL
        health = manager.probe(handle)

        preview_url = manager.expose_port(handle, config.sandbox_app_port)
        services.reconciler.record(project_id, preview_url)

    if health.healthy:
        message = "Sandbox is ready"
    else:
        message = "Sandbox started; the app has not passed its health check yet"

    return SetupResult(
        project_id=project_id,
        preview_url=preview_url,
        message=message,
        healthy=health.healthy,
    )


# =============================================================================
# STATUS
# =============================================================================

def run_status(services: WorkerServices, project_id: str) -> StatusResult:
    """Report whether the project's cached preview is still live."""
    return services.reconciler.check(project_id)


# =============================================================================
# EDIT
# =============================================================================

def run_edit(services: WorkerServices, project_id: str, thread_id: str, prompt: str) -> EditResult:
    """
    Run the agent against a project's sandbox with the user's request.

    Edits for the same project are serialized.

    Raises:
        InfrastructureError: If the sandbox could not be acquired
        ModelInvocationError: If the model could not be invoked
    """
    config = services.config

    with _edit_locks.hold(project_id):
        handle = services.manager.acquire(project_id)
        loop = AgentStepLoop(
            llm=services.llm,
            executor=_executor_for(services, handle),
            sink=services.sink,
            thread_id=thread_id,
            max_steps=config.agent_max_steps,
            max_parallel_tools=config.agent_max_parallel_tools,
        )
        system_prompt = build_system_prompt(
            app_dir=config.sandbox_app_dir,
            app_port=config.sandbox_app_port,
            workdir=config.sandbox_workdir,
        )
        result = loop.run(prompt, system_prompt)

    if result.status == "failed":
        raise ModelInvocationError(result.error or "The agent could not complete the request")

    logger.info(
        "Edit for %s finished in %d step(s) with %d tool call(s)%s",
        project_id,
        result.steps,
        result.tool_calls,
        " (step budget reached)" if result.budget_exhausted else "",
    )

    return EditResult(
        project_id=project_id,
        response=result.response,
        steps=result.steps,
        tool_calls=result.tool_calls,
    )
