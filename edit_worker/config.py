"""
Configuration module for loading and validating environment variables.
"""

import os
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv

from edit_worker.errors import ConfigurationError


HEALTHCHECK_TEMPLATE = (
    "node -e \"require('http').get('http://localhost:{port}/health', "
    "r => process.exit(r.statusCode === 200 ? 0 : 1)).on('error', () => process.exit(1))\""
)


def default_healthcheck(port: int) -> str:
    """Health check that expects the app to answer 200 on /health at ``port``."""
    return HEALTHCHECK_TEMPLATE.format(port=port)


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _get_port_list(name: str, default: List[int]) -> List[int]:
    value = os.getenv(name)
    if not value:
        return list(default)
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise ConfigurationError(f"{name} must be a comma-separated list of ports, got {value!r}")


class Config:
    """Application configuration loaded from environment variables."""

    def __init__(self):
        # Load .env file from project root
        env_path = Path(__file__).parent.parent / ".env"
        load_dotenv(dotenv_path=env_path)

        # Shared secret and control-plane endpoint
        self.worker_api_secret = os.getenv("WORKER_API_SECRET")
        self.control_api_url = os.getenv("CONTROL_API_URL")

        # Azure OpenAI settings
        self.azure_openai_api_key = os.getenv("AZURE_OPENAI_API_KEY")
        self.azure_openai_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
        self.azure_openai_deployment_name = os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME")
        self.azure_openai_api_version = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview")

        # Sandbox settings
        self.sandbox_image = os.getenv("SANDBOX_IMAGE", "node:18-slim")
        self.sandbox_workdir = os.getenv("SANDBOX_WORKDIR", "/workspace")
        self.sandbox_app_dir = os.getenv("SANDBOX_APP_DIR", "/workspace/app")
        self.sandbox_app_port = _get_int("SANDBOX_APP_PORT", 3001)
        self.sandbox_exposed_ports = _get_port_list("SANDBOX_EXPOSED_PORTS", [3001, 3000, 5173, 8080])
        self.sandbox_start_command = os.getenv("SANDBOX_START_COMMAND", "npm start")
        self.sandbox_healthcheck = os.getenv("SANDBOX_HEALTHCHECK") or default_healthcheck(self.sandbox_app_port)
        self.sandbox_startup_grace_seconds = _get_float("SANDBOX_STARTUP_GRACE_SECONDS", 3.0)
        self.sandbox_probe_backoff_seconds = _get_float("SANDBOX_PROBE_BACKOFF_SECONDS", 2.0)
        self.sandbox_seed_template = _get_bool("SANDBOX_SEED_TEMPLATE", True)
        self.preview_url_template = os.getenv("PREVIEW_URL_TEMPLATE", "http://localhost:{host_port}")
        self.preview_cache_file: Optional[str] = os.getenv("PREVIEW_CACHE_FILE") or None

        # Agent loop settings
        self.agent_max_steps = _get_int("AGENT_MAX_STEPS", 20)
        self.agent_max_parallel_tools = _get_int("AGENT_MAX_PARALLEL_TOOLS", 4)

        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        # Validate required settings
        self._validate()

    def _validate(self):
        """Validate that all required environment variables are set."""
        missing = []

        if not self.worker_api_secret:
            missing.append("WORKER_API_SECRET")
        if not self.control_api_url:
            missing.append("CONTROL_API_URL")
        if not self.azure_openai_api_key:
            missing.append("AZURE_OPENAI_API_KEY")
        if not self.azure_openai_endpoint:
            missing.append("AZURE_OPENAI_ENDPOINT")
        if not self.azure_openai_deployment_name:
            missing.append("AZURE_OPENAI_DEPLOYMENT_NAME")

        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please create a .env file with these variables. See .env.example for reference."
            )

        if self.agent_max_steps < 1:
            raise ConfigurationError("AGENT_MAX_STEPS must be at least 1")
        if self.sandbox_app_port not in self.sandbox_exposed_ports:
            raise ConfigurationError(
                f"SANDBOX_APP_PORT {self.sandbox_app_port} must be listed in SANDBOX_EXPOSED_PORTS"
            )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next call re-reads the environment."""
    global _config
    _config = None
