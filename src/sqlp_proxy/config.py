"""
Server configuration.

Values come from SQLP_* environment variables; command-line flags of
``python -m sqlp_proxy.server`` override them.
"""

import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

VALID_LOG_FORMATS = ("console", "json")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ProxyConfig:
    """Listener and runtime settings"""
    host: str = "127.0.0.1"
    port: int = 5555
    line_limit: int = 1024 * 1024
    max_workers: int = 10
    log_level: str = "INFO"
    log_format: str = "console"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProxyConfig":
        """
        Build a configuration from environment variables.

        Raises:
            ValueError: a numeric variable is not an integer
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        log_level = env.get("SQLP_LOG_LEVEL")
        if not log_level:
            log_level = "DEBUG" if _env_bool(env.get("SQLP_DEBUG")) else defaults.log_level

        return cls(
            host=env.get("SQLP_HOST", defaults.host),
            port=int(env.get("SQLP_PORT", defaults.port)),
            line_limit=int(env.get("SQLP_LINE_LIMIT", defaults.line_limit)),
            max_workers=int(env.get("SQLP_MAX_WORKERS", defaults.max_workers)),
            log_level=log_level.upper(),
            log_format=env.get("SQLP_LOG_FORMAT", defaults.log_format).lower(),
        )

    def validate(self) -> List[str]:
        """
        Validate configuration parameters.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not (0 <= self.port <= 65535):
            errors.append(f"Port must be 0-65535, got {self.port}")

        if self.line_limit <= 0:
            errors.append(f"line_limit must be > 0, got {self.line_limit}")

        if self.max_workers <= 0:
            errors.append(f"max_workers must be > 0, got {self.max_workers}")

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"Invalid log_level: {self.log_level}")

        if self.log_format not in VALID_LOG_FORMATS:
            errors.append(f"Invalid log_format: {self.log_format}")

        return errors
