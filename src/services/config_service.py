import logging
import os
from dataclasses import dataclass
from typing import List, Mapping, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_ORGANIZATION = "access-devops"
DEFAULT_BASE_URL = "https://dev.azure.com"


class ConfigurationError(Exception):
    """Raised when required settings are missing or invalid"""
    pass


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime settings for the Epic effort report"""
    pat: str
    organization: str = DEFAULT_ORGANIZATION
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0
    max_retries: int = 0
    max_workers: int = 1
    iteration_path_depth: int = 2
    fail_epic_on_child_error: bool = False
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    def validate(self) -> List[str]:
        """Validate settings. Returns list of error messages."""
        errors: List[str] = []

        if not self.pat:
            errors.append(
                "Personal Access Token (PAT) is missing. "
                "Please set the environment variable AZURE_DEVOPS_PAT."
            )

        if not self.organization:
            errors.append("Azure DevOps organization is required")

        parsed = urlparse(self.base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append("AZURE_DEVOPS_BASE_URL must be an http(s) URL")

        if self.timeout <= 0:
            errors.append("AZURE_DEVOPS_TIMEOUT must be greater than 0")
        if self.max_retries < 0:
            errors.append("AZURE_DEVOPS_MAX_RETRIES cannot be negative")
        if self.max_workers < 1:
            errors.append("AZURE_DEVOPS_MAX_WORKERS must be at least 1")
        if self.iteration_path_depth < 0:
            errors.append("ITERATION_PATH_DEPTH cannot be negative")

        return errors


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Read settings from the process environment

    Args:
        environ: Mapping to read from instead of os.environ

    Raises:
        ConfigurationError: If the PAT is missing or a value is invalid
    """
    env = os.environ if environ is None else environ

    try:
        settings = Settings(
            pat=env.get("AZURE_DEVOPS_PAT", "").strip(),
            organization=env.get("AZURE_DEVOPS_ORG", DEFAULT_ORGANIZATION).strip(),
            base_url=env.get("AZURE_DEVOPS_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            timeout=float(env.get("AZURE_DEVOPS_TIMEOUT", 30)),
            max_retries=int(env.get("AZURE_DEVOPS_MAX_RETRIES", 0)),
            max_workers=int(env.get("AZURE_DEVOPS_MAX_WORKERS", 1)),
            iteration_path_depth=int(env.get("ITERATION_PATH_DEPTH", 2)),
            fail_epic_on_child_error=_parse_bool(env.get("FAIL_EPIC_ON_CHILD_ERROR")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            log_dir=env.get("LOG_DIR") or None,
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    errors = settings.validate()
    if errors:
        raise ConfigurationError("; ".join(errors))

    logger.debug(f"Loaded settings for organization {settings.organization}")
    return settings
