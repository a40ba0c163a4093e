"""
Edit Worker - HTTP Application

A sandboxed code-edit worker: it prepares a live sandbox per project, serves
a preview of the app running inside it, and runs a tool-calling agent that
edits the project on request.

Endpoints (all POST, JSON, guarded by the ``x-api-secret`` header):
- /setup  - Provision or reuse the project's sandbox, start and expose the app
- /status - Report whether the cached preview is still live
- /edit   - Run the agent against the project's sandbox
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from edit_worker.errors import AuthenticationError, ValidationError, WorkerError
from edit_worker.orchestrator import WorkerServices, build_services, run_edit, run_setup, run_status
from edit_worker.schemas import EditRequest, SetupRequest, StatusRequest


logger = logging.getLogger(__name__)

app = FastAPI(
    title="Edit Worker",
    description="Sandboxed agentic code-edit worker",
    version="1.0.0",
)


# =============================================================================
# Services & Auth
# =============================================================================

_services: Optional[WorkerServices] = None


def get_services() -> WorkerServices:
    """Get the process-wide services, wiring them on first use."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def require_secret(request: Request, services: WorkerServices = Depends(get_services)) -> None:
    """Reject requests whose ``x-api-secret`` header does not match the configured secret."""
    provided = request.headers.get("x-api-secret")
    expected = services.config.worker_api_secret or ""
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationError("Unauthorized")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(WorkerError)
async def worker_error_handler(request: Request, exc: WorkerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
        for error in exc.errors()
    )
    error = ValidationError(f"Invalid request: {details}")
    return JSONResponse(status_code=error.status_code, content={"error": str(error)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# =============================================================================
# Endpoints
# =============================================================================

@app.post("/setup", dependencies=[Depends(require_secret)])
def setup(request: SetupRequest, services: WorkerServices = Depends(get_services)):
    """Provision (or reuse) the project's sandbox and return its preview URL."""
    logger.info("Setup requested for %s", request.project_id)
    result = run_setup(services, request.project_id)
    return result.model_dump(by_alias=True)


@app.post("/status", dependencies=[Depends(require_secret)])
def status(request: StatusRequest, services: WorkerServices = Depends(get_services)):
    """Report whether the project's preview is live."""
    result = run_status(services, request.project_id)
    return result.model_dump(by_alias=True, exclude_none=True)


@app.post("/edit", dependencies=[Depends(require_secret)])
def edit(request: EditRequest, services: WorkerServices = Depends(get_services)):
    """Run the agent on the project with the user's prompt."""
    logger.info("Edit requested for %s on thread %s", request.project_id, request.thread_id)
    result = run_edit(services, request.project_id, request.thread_id, request.prompt)
    return result.model_dump(by_alias=True)


@app.on_event("startup")
async def startup_event():
    """Configure logging and wire services on startup."""
    services = get_services()
    configure_logging(services.config.log_level)
    logger.info("Edit worker starting...")
    logger.info("  Sandbox image: %s", services.config.sandbox_image)
    logger.info("  App port: %s", services.config.sandbox_app_port)
    logger.info("  Step budget: %s", services.config.agent_max_steps)


@app.on_event("shutdown")
async def shutdown_event():
    """Deliver queued audit messages before exiting."""
    if _services is not None:
        _services.sink.close()


def run_server(host: str = "0.0.0.0", port: int = 8080):
    """Run the worker server."""
    import uvicorn

    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    run_server()
