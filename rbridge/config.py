"""Configuration loading and validation for rbridge.

Settings come from an optional JSON file (rbridge.json) with environment
variable overrides on top. Empty executable paths mean "use the platform
default"; a configured path that does not exist is only reported when a
session tries to spawn it.
"""

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_R_EXECUTABLE = "/usr/local/bin/R"
DEFAULT_EVAL_ARGS = ["--vanilla", "--quiet", "--slave"]
DEFAULT_LANGUAGE_SERVER_ARGS = ["--slave", "-e", "languageserver::run()"]

# Environment variable -> (config attribute, converter)
ENV_OVERRIDES = {
    "RBRIDGE_R_PATH": ("r_executable_path", str),
    "RBRIDGE_PANDOC_PATH": ("pandoc_path", str),
    "RBRIDGE_ARTIFACT_ROOT": ("artifact_root", str),
    "RBRIDGE_SCRATCH_ROOT": ("scratch_root", str),
    "RBRIDGE_EVAL_TIMEOUT": ("eval_timeout", float),
    "RBRIDGE_REQUEST_TIMEOUT": ("request_timeout", float),
}


@dataclass
class RBridgeConfig:
    """Settings consumed by the session registry, evaluator and language session."""

    r_executable_path: str = ""
    pandoc_path: str = ""
    path_prefix: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    scratch_root: Optional[str] = None
    artifact_root: str = ".rbridge"

    plot_width: int = 800
    plot_height: int = 600
    preview_length: int = 200

    # None means wait forever
    eval_timeout: Optional[float] = None
    request_timeout: Optional[float] = None

    eval_args: List[str] = field(default_factory=lambda: list(DEFAULT_EVAL_ARGS))
    language_server_args: List[str] = field(
        default_factory=lambda: list(DEFAULT_LANGUAGE_SERVER_ARGS)
    )

    def resolve_executable(self) -> str:
        """Return the configured R executable, or the platform default."""
        configured = self.r_executable_path.strip()
        if configured:
            return configured
        return shutil.which("R") or DEFAULT_R_EXECUTABLE

    def resolve_scratch_root(self) -> str:
        return self.scratch_root or tempfile.gettempdir()

    def child_environment(self) -> Dict[str, str]:
        """Build the environment for a spawned R process.

        Inherits the host environment, then applies the pandoc location,
        the PATH prefix and any explicit overrides.
        """
        env = dict(os.environ)
        if self.pandoc_path:
            env["RSTUDIO_PANDOC"] = self.pandoc_path
        if self.path_prefix:
            current = env.get("PATH", "")
            env["PATH"] = self.path_prefix + (os.pathsep + current if current else "")
        env.update(self.env)
        return env


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(f"Configuration validation failed: {'; '.join(errors)}")


def validate_config(config: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Validate a raw configuration dict.

    Args:
        config: Configuration dict loaded from JSON

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors: List[str] = []

    for key in ("r_executable_path", "pandoc_path", "path_prefix",
                "scratch_root", "artifact_root"):
        value = config.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"'{key}' must be a string")

    for key in ("plot_width", "plot_height", "preview_length"):
        value = config.get(key)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value <= 0):
            errors.append(f"'{key}' must be a positive integer")

    for key in ("eval_timeout", "request_timeout"):
        value = config.get(key)
        if value is not None and (not isinstance(value, (int, float)) or value <= 0):
            errors.append(f"'{key}' must be a positive number or null")

    env = config.get("env")
    if env is not None:
        if not isinstance(env, dict):
            errors.append("'env' must be an object")
        elif not all(isinstance(k, str) and isinstance(v, str) for k, v in env.items()):
            errors.append("'env' keys and values must be strings")

    for key in ("eval_args", "language_server_args"):
        value = config.get(key)
        if value is not None and (
            not isinstance(value, list) or not all(isinstance(v, str) for v in value)
        ):
            errors.append(f"'{key}' must be a list of strings")

    return len(errors) == 0, errors


def _apply_env_overrides(config: RBridgeConfig) -> None:
    for env_name, (attr, convert) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            setattr(config, attr, convert(raw))
        except ValueError:
            logger.warning(f"Ignoring invalid {env_name}={raw!r}")


def load_config(
    path: Optional[str] = None,
    env_var: str = "RBRIDGE_CONFIG"
) -> RBridgeConfig:
    """Load, validate and apply environment overrides to the configuration.

    Args:
        path: Direct path to a config file. If None, uses env_var or defaults.
        env_var: Environment variable name for the config path

    Returns:
        RBridgeConfig instance

    Raises:
        FileNotFoundError: If an explicitly named config file doesn't exist
        ConfigValidationError: If config validation fails
        json.JSONDecodeError: If the config file is not valid JSON
    """
    if path is None:
        path = os.environ.get(env_var)

    if path is None:
        default_paths = [
            Path.cwd() / "rbridge.json",
            Path.cwd() / ".rbridge.json",
            Path.home() / ".config" / "rbridge" / "rbridge.json",
        ]
        for default_path in default_paths:
            if default_path.exists():
                path = str(default_path)
                break

    if path is None:
        config = RBridgeConfig()
        _apply_env_overrides(config)
        return config

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"rbridge config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        raw_config = json.load(f)

    if not isinstance(raw_config, dict):
        raise ConfigValidationError(["Config root must be an object"])

    is_valid, errors = validate_config(raw_config)
    if errors:
        raise ConfigValidationError(errors)

    defaults = RBridgeConfig()
    config = RBridgeConfig(
        r_executable_path=raw_config.get("r_executable_path", defaults.r_executable_path),
        pandoc_path=raw_config.get("pandoc_path", defaults.pandoc_path),
        path_prefix=raw_config.get("path_prefix"),
        env=dict(raw_config.get("env", {})),
        scratch_root=raw_config.get("scratch_root"),
        artifact_root=raw_config.get("artifact_root", defaults.artifact_root),
        plot_width=raw_config.get("plot_width", defaults.plot_width),
        plot_height=raw_config.get("plot_height", defaults.plot_height),
        preview_length=raw_config.get("preview_length", defaults.preview_length),
        eval_timeout=raw_config.get("eval_timeout"),
        request_timeout=raw_config.get("request_timeout"),
        eval_args=list(raw_config.get("eval_args", defaults.eval_args)),
        language_server_args=list(
            raw_config.get("language_server_args", defaults.language_server_args)
        ),
    )
    _apply_env_overrides(config)
    logger.debug(f"Loaded rbridge config from {config_path}")
    return config
