"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via THREADLINE_* env vars
or a YAML file (see :mod:`threadline.engine.yaml_config`).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)


def parse_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def _split_names(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class ClientConfig:
    """Chat client configuration."""

    # Backend
    base_url: str = "http://localhost:8080"
    # Agent key; empty string targets the backend's default agent.
    agent: str = ""
    model: str = "gpt-4.1"
    user_id: str = "local-user"
    auth_token: str | None = field(default=None, repr=False)
    request_timeout_seconds: float = 60.0

    # Minimum interval between visible updates of streamed text.
    flush_interval_seconds: float = 0.1

    # Tool names that get structured rendering. Matching is exact.
    graph_tools: list[str] = field(default_factory=lambda: ["Graphing_Agent"])
    citation_tools: list[str] = field(default_factory=lambda: ["PDF_Viewer"])
    sql_tools: list[str] = field(default_factory=lambda: ["SQL_Executor"])

    # Document highlights
    highlight_color: str = "#ffff00"
    highlight_opacity: float = 0.4

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load configuration from THREADLINE_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items()
            if k.startswith("THREADLINE_") and k != "THREADLINE_AUTH_TOKEN"
        }
        if env_vars:
            logger.info(
                "ClientConfig.from_env: THREADLINE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("ClientConfig.from_env: no THREADLINE_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            base_url=os.getenv("THREADLINE_BASE_URL", cls.base_url),
            agent=os.getenv("THREADLINE_AGENT", cls.agent),
            model=os.getenv("THREADLINE_MODEL", cls.model),
            user_id=os.getenv("THREADLINE_USER_ID", cls.user_id),
            auth_token=os.getenv("THREADLINE_AUTH_TOKEN") or None,
            request_timeout_seconds=parse_float(os.getenv(
                "THREADLINE_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            ), "THREADLINE_REQUEST_TIMEOUT"),
            flush_interval_seconds=parse_float(os.getenv(
                "THREADLINE_FLUSH_INTERVAL", str(cls.flush_interval_seconds)
            ), "THREADLINE_FLUSH_INTERVAL"),
            graph_tools=_split_names(os.getenv(
                "THREADLINE_GRAPH_TOOLS", ",".join(defaults.graph_tools)
            )),
            citation_tools=_split_names(os.getenv(
                "THREADLINE_CITATION_TOOLS", ",".join(defaults.citation_tools)
            )),
            sql_tools=_split_names(os.getenv(
                "THREADLINE_SQL_TOOLS", ",".join(defaults.sql_tools)
            )),
            highlight_color=os.getenv("THREADLINE_HIGHLIGHT_COLOR", cls.highlight_color),
            highlight_opacity=parse_float(os.getenv(
                "THREADLINE_HIGHLIGHT_OPACITY", str(cls.highlight_opacity)
            ), "THREADLINE_HIGHLIGHT_OPACITY"),
            log_level=os.getenv("THREADLINE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "ClientConfig.from_env: base_url=%s agent=%s model=%s log_level=%s",
            config.base_url, config.agent or "<default>",
            config.model, config.log_level,
        )
        return config
