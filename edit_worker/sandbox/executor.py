"""
Sandbox Tool Executor - The closed set of tools the agent may run in a sandbox.

Contract:
- Every tool declares a pydantic input model; its JSON schema is what the
  model sees and what arguments are validated against
- Every tool returns a ToolOutcome and never raises, so failures become
  ordinary context the model can react to
- Commands run synchronously with a hard timeout; long-running servers are
  started through the lifecycle manager instead

Tools:
- writeFile, readFile, runBash, replaceText, exposePort
"""

import logging
import posixpath
import time
from typing import Any, Dict, FrozenSet, List, Optional, Type

from docker.errors import DockerException, NotFound  # type: ignore[import-not-found]
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from edit_worker.errors import ExecutionError, ExposureError, NotFoundError
from edit_worker.sandbox.preview import SandboxManager
from edit_worker.sandbox.registry import SandboxHandle
from edit_worker.schemas import (
    ExposePortArgs,
    ReadFileArgs,
    ReplaceTextArgs,
    RunBashArgs,
    ToolInvocation,
    ToolName,
    ToolOutcome,
    WriteFileArgs,
)
from edit_worker.utils import make_tar_bytes, read_tar_file, truncate_output

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

MAX_EXECUTION_TIME = 300  # seconds (5 minutes)
TIMEOUT_EXIT_CODE = 124  # exit status of coreutils `timeout`

TOOL_ARGS: Dict[ToolName, Type[BaseModel]] = {
    "writeFile": WriteFileArgs,
    "readFile": ReadFileArgs,
    "runBash": RunBashArgs,
    "replaceText": ReplaceTextArgs,
    "exposePort": ExposePortArgs,
}

TOOL_DESCRIPTIONS: Dict[ToolName, str] = {
    "writeFile": (
        "Write content to a file in the workspace. Creates the file if it does not exist, "
        "overwrites if it does."
    ),
    "readFile": "Read the contents of a file in the workspace.",
    "runBash": (
        "Execute a bash command in the workspace and wait for it to finish. Use for installing "
        "packages, building, or inspecting files. Do not use it to start long-running servers."
    ),
    "replaceText": (
        "Replace a specific text string in a file. Use this for precise edits instead of rewriting "
        "entire files. The oldText must match exactly and occur exactly once."
    ),
    "exposePort": "Publish a port the application listens on and return its public preview URL.",
}

# Tools that leave the workspace untouched and may share a step concurrently.
# Everything else runs alone, in the order the model proposed it.
CONCURRENT_TOOLS: FrozenSet[ToolName] = frozenset({"readFile", "exposePort"})


def tool_definitions() -> List[Dict[str, Any]]:
    """Tool specifications in the function-calling format the model expects."""
    return [
        {
            "type": "function",
            "function": {
                "name": name,
                "description": TOOL_DESCRIPTIONS[name],
                "parameters": model.model_json_schema(),
            },
        }
        for name, model in TOOL_ARGS.items()
    ]


def _decode(output: Optional[bytes]) -> str:
    if output is None:
        return ""
    return output.decode("utf-8", errors="replace")


def _summarize_validation_error(error: SchemaValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


# =============================================================================
# TOOL EXECUTOR
# =============================================================================

class SandboxToolExecutor:
    """Runs tool invocations against one sandbox."""

    def __init__(
        self,
        manager: SandboxManager,
        handle: SandboxHandle,
        default_cwd: str = "/workspace",
        command_timeout: int = MAX_EXECUTION_TIME,
    ):
        self.manager = manager
        self.handle = handle
        self.default_cwd = default_cwd
        self.command_timeout = command_timeout

    @property
    def container(self):
        return self.handle.container

    def execute(self, invocation: ToolInvocation) -> ToolOutcome:
        """
        Validate and run one tool invocation.

        The outcome is stored on the invocation and returned. Never raises.
        """
        name = invocation.name

        if invocation.parse_error:
            outcome = ToolOutcome.fail(invocation.parse_error)
        elif name not in TOOL_ARGS:
            outcome = ToolOutcome.fail(f"Unknown tool: {name}. Available tools: {', '.join(TOOL_ARGS)}")
        else:
            try:
                args = TOOL_ARGS[name].model_validate(invocation.arguments)
            except SchemaValidationError as e:
                outcome = ToolOutcome.fail(f"Invalid arguments for {name}: {_summarize_validation_error(e)}")
            else:
                outcome = self._dispatch(name, args)

        invocation.outcome = outcome
        if not outcome.success:
            logger.info("Tool %s failed in %s: %s", name, self.handle.container_name, outcome.error)
        return outcome

    def _dispatch(self, name: str, args: Any) -> ToolOutcome:
        try:
            if name == "writeFile":
                return self.write_file(args.path, args.content)
            elif name == "readFile":
                return self.read_file(args.path)
            elif name == "runBash":
                return self.run_bash(args.command, args.cwd)
            elif name == "replaceText":
                return self.replace_text(args.path, args.old_text, args.new_text)
            elif name == "exposePort":
                return self.expose_port(args.port)
        except Exception as e:
            logger.exception("Tool %s raised unexpectedly", name)
            return ToolOutcome.fail(f"Unexpected error: {e}")

        return ToolOutcome.fail(f"Unknown tool: {name}")

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    def write_file(self, path: str, content: str) -> ToolOutcome:
        """Create or overwrite a file. Parent directories are created as needed."""
        path = self._resolve(path)
        try:
            self._write_text(path, content)
        except DockerException as e:
            return ToolOutcome.fail(str(e), path=path)
        return ToolOutcome.ok(path=path, message=f"File written successfully: {path}")

    def read_file(self, path: str) -> ToolOutcome:
        path = self._resolve(path)
        try:
            content = self._read_text(path)
        except NotFoundError as e:
            return ToolOutcome.fail(str(e), path=path)
        except DockerException as e:
            return ToolOutcome.fail(str(e), path=path)
        return ToolOutcome.ok(path=path, content=content)

    def run_bash(self, command: str, cwd: Optional[str] = None) -> ToolOutcome:
        """Run a command to completion and capture its output."""
        workdir = self._resolve(cwd) if cwd else self.default_cwd
        started = time.monotonic()
        try:
            exit_code, output = self.container.exec_run(
                ["timeout", str(self.command_timeout), "bash", "-c", command],
                workdir=workdir,
                demux=True,
            )
        except DockerException as e:
            return ToolOutcome.fail(str(e))
        duration = int((time.monotonic() - started) * 1000)

        stdout, stderr = output if output else (None, None)
        payload = {
            "exitCode": exit_code,
            "stdout": truncate_output(_decode(stdout)),
            "stderr": truncate_output(_decode(stderr)),
            "duration": duration,
        }

        if exit_code == 0:
            return ToolOutcome.ok(**payload)

        if exit_code == TIMEOUT_EXIT_CODE:
            error = ExecutionError(f"Command timed out after {self.command_timeout}s", exit_code)
        else:
            error = ExecutionError(f"Command exited with code {exit_code}", exit_code)
        return ToolOutcome.fail(str(error), **payload)

    def replace_text(self, path: str, old_text: str, new_text: str) -> ToolOutcome:
        """Replace ``old_text`` only if it occurs exactly once; otherwise leave the file alone."""
        path = self._resolve(path)
        try:
            content = self._read_text(path)
        except NotFoundError as e:
            return ToolOutcome.fail(str(e), path=path)
        except DockerException as e:
            return ToolOutcome.fail(str(e), path=path)

        occurrences = content.count(old_text)
        if occurrences == 0:
            return ToolOutcome.fail(
                "oldText not found in file. Make sure it matches exactly including whitespace.",
                path=path,
            )
        if occurrences > 1:
            return ToolOutcome.fail(
                f"oldText found {occurrences} times. Please provide more context to make it unique.",
                path=path,
                occurrences=occurrences,
            )

        try:
            self._write_text(path, content.replace(old_text, new_text, 1))
        except DockerException as e:
            return ToolOutcome.fail(str(e), path=path)
        return ToolOutcome.ok(path=path, message="Text replaced successfully")

    def expose_port(self, port: int) -> ToolOutcome:
        try:
            url = self.manager.expose_port(self.handle, port)
        except ExposureError as e:
            return ToolOutcome.fail(str(e), port=port)
        return ToolOutcome.ok(port=port, url=url)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _resolve(self, path: str) -> str:
        if not path.startswith("/"):
            path = posixpath.join(self.default_cwd, path)
        return posixpath.normpath(path)

    def _write_text(self, path: str, content: str) -> None:
        archive = make_tar_bytes({path: content})
        if not self.container.put_archive("/", archive):
            raise DockerException(f"Failed to write {path}")

    def _read_text(self, path: str) -> str:
        try:
            chunks, _ = self.container.get_archive(path)
        except NotFound:
            raise NotFoundError(f"File not found: {path}")

        content = read_tar_file(chunks, posixpath.basename(path))
        if content is None:
            raise NotFoundError(f"Not a regular file: {path}")
        return content
