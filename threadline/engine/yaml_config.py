"""YAML configuration loader.

Loads a single YAML file on top of the environment-derived defaults.
Any key left out keeps the value from :meth:`ClientConfig.from_env`.

Example YAML:
    backend:
      base_url: https://agent.example.com
      agent: research-assistant
      model: gpt-4.1
      user_id: 3f1c9a
      auth_token_env: AGENT_TOKEN
      request_timeout_seconds: 30

    stream:
      flush_interval_seconds: 0.1

    tools:
      graph: [Graphing_Agent]
      citation: [PDF_Viewer, Document_Search]
      sql: [SQL_Executor]

    highlight:
      color: "#ffd54f"
      opacity: 0.35

    logging:
      level: DEBUG
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import ClientConfig, parse_float
from .errors import ConfigError

logger = logging.getLogger(__name__)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' section must be a mapping, got {type(value).__name__}")
    return value


def _names(value: Any, key: str) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigError(f"tools.{key} must be a string or a list of strings")


def apply_yaml_config(config: ClientConfig, raw: dict[str, Any]) -> ClientConfig:
    """Return a copy of *config* with the YAML sections in *raw* applied."""
    changes: dict[str, Any] = {}

    backend = _section(raw, "backend")
    for key in ("base_url", "agent", "model", "user_id"):
        if key in backend:
            changes[key] = str(backend[key] or "")
    if "request_timeout_seconds" in backend:
        changes["request_timeout_seconds"] = parse_float(
            backend["request_timeout_seconds"], "backend.request_timeout_seconds",
        )
    token_env = backend.get("auth_token_env")
    if token_env:
        token = os.getenv(str(token_env))
        if token:
            changes["auth_token"] = token
        else:
            logger.warning("apply_yaml_config: auth_token_env %s is not set", token_env)

    stream = _section(raw, "stream")
    if "flush_interval_seconds" in stream:
        changes["flush_interval_seconds"] = parse_float(
            stream["flush_interval_seconds"], "stream.flush_interval_seconds",
        )

    tools = _section(raw, "tools")
    for key, attr in (("graph", "graph_tools"), ("citation", "citation_tools"), ("sql", "sql_tools")):
        if key in tools:
            changes[attr] = _names(tools[key], key)

    highlight = _section(raw, "highlight")
    if "color" in highlight:
        changes["highlight_color"] = str(highlight["color"])
    if "opacity" in highlight:
        changes["highlight_opacity"] = parse_float(
            highlight["opacity"], "highlight.opacity",
        )

    log_section = _section(raw, "logging")
    if "level" in log_section:
        changes["log_level"] = str(log_section["level"]).upper()

    return dataclasses.replace(config, **changes)


def load_yaml_config(path: str | Path, base: ClientConfig | None = None) -> ClientConfig:
    """Load and parse a YAML config file.

    Values from the file override *base*, which defaults to
    :meth:`ClientConfig.from_env`.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )
    return apply_yaml_config(base if base is not None else ClientConfig.from_env(), raw)
