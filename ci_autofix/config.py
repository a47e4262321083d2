"""Configuration loader for the application."""

import os
from typing import Any, Dict, Optional, Set
import yaml
from dotenv import load_dotenv, find_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from ci_autofix.errors import ConfigError
from ci_autofix.models.state import ErrorKind

# Load environment variables from .env file in project root
dotenv_path = find_dotenv(usecwd=True)
if dotenv_path:
    load_dotenv(dotenv_path)
else:
    load_dotenv()


DEFAULT_ENABLED_KINDS = {
    ErrorKind.LINT,
    ErrorKind.FORMAT,
    ErrorKind.DEPENDENCY_VULNERABILITY,
}


class AutoFixConfig(BaseModel):
    """Options recognised under the ``autofix`` key."""
    enabled: bool = True
    max_attempts: int = Field(default=2, ge=1)
    max_changed_lines: int = Field(default=1000, ge=1)
    max_files_per_fix: int = Field(default=20, ge=1)
    enabled_kinds: Set[ErrorKind] = Field(default_factory=lambda: set(DEFAULT_ENABLED_KINDS))
    poll_initial_interval: float = Field(default=5.0, gt=0)
    poll_max_interval: float = Field(default=30.0, gt=0)
    poll_multiplier: float = Field(default=1.5, ge=1.0)
    poll_timeout: float = Field(default=600.0, gt=0)
    fail_fast: bool = True
    verification_start_timeout: float = Field(default=60.0, gt=0)
    verification_timeout: float = Field(default=300.0, gt=0)
    command_timeout: float = Field(default=300.0, gt=0)
    # Local checks run on the fixed tree before a fix is published
    require_checks: bool = True
    check_command: Optional[str] = None
    check_timeout: float = Field(default=120.0, gt=0)
    dry_run: bool = False
    branch_prefix: str = "autofix/"
    # language -> task -> command line, e.g. {"python": {"lint": "ruff check --fix"}}
    commands: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    @field_validator("poll_max_interval")
    @classmethod
    def _ceiling_not_below_initial(cls, value, info):
        initial = info.data.get("poll_initial_interval")
        if initial is not None and value < initial:
            raise ValueError("poll_max_interval must be >= poll_initial_interval")
        return value

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AutoFixConfig":
        """Build from a raw mapping, raising ConfigError on bad values."""
        try:
            return cls(**(data or {}))
        except ValidationError as e:
            raise ConfigError(f"Invalid autofix configuration: {e}") from e


class Config:
    """Application configuration manager."""

    def __init__(self, config_path: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to config.yaml (defaults to ./config.yaml)
            data: Pre-parsed configuration; skips file loading when given
        """
        if data is not None:
            self._config = self._substitute_env_vars(data)
            return

        if config_path is None:
            config_path = os.path.join(os.getcwd(), "config.yaml")

        if not os.path.exists(config_path):
            example_path = config_path.replace("config.yaml", "config.example.yaml")
            if os.path.exists(example_path):
                config_path = example_path
            else:
                raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, "r") as f:
            self._config = yaml.safe_load(f) or {}

        # Substitute environment variables
        self._config = self._substitute_env_vars(self._config)

    def _substitute_env_vars(self, obj: Any) -> Any:
        """Recursively substitute ${ENV_VAR} patterns with environment variables."""
        if isinstance(obj, dict):
            return {k: self._substitute_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._substitute_env_vars(item) for item in obj]
        elif isinstance(obj, str):
            if obj.startswith("${") and obj.endswith("}"):
                var_name = obj[2:-1]
                return os.getenv(var_name, obj)
            return obj
        return obj

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-separated key.

        Args:
            key: Dot-separated key (e.g., "autofix.max_attempts")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_all(self) -> Dict[str, Any]:
        """Get complete configuration dictionary."""
        return self._config

    # Convenience properties

    @property
    def github_token(self) -> str:
        token = self.get("github.token", "") or os.getenv("GITHUB_TOKEN", "")
        if not token or token.startswith("${"):
            raise ValueError("GitHub token not configured. Set GITHUB_TOKEN environment variable.")
        return token

    @property
    def github_api_url(self) -> str:
        return self.get("github.api_url", "https://api.github.com")

    @property
    def autofix(self) -> AutoFixConfig:
        return AutoFixConfig.from_dict(self.get("autofix", {}))

    @property
    def development_mode(self) -> bool:
        return self.get("development.debug", False)

    @property
    def dry_run(self) -> bool:
        return self.get("development.dry_run", False) or self.autofix.dry_run


# Global config instance
_config: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = Config(config_path)
    return _config
