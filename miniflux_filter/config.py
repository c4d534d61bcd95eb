"""Configuration loading for miniflux_filter."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional
from xml.etree import ElementTree as ET

from .activity import DEFAULT_CAPACITY
from .client import DEFAULT_MAX_PAGES, DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT
from .orchestrator import DEFAULT_CONCURRENCY

logger = logging.getLogger(__name__)


@dataclass
class MinifluxConfig:
    url: str = ""
    token: str = ""
    timeout: float = DEFAULT_TIMEOUT
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_PAGES


@dataclass
class SyncConfig:
    poll_interval: int = 300
    concurrency: int = DEFAULT_CONCURRENCY


@dataclass
class WebConfig:
    enabled: bool = True
    port: int = 8080


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class AppConfig:
    miniflux: MinifluxConfig = field(default_factory=MinifluxConfig)
    rules_dir: str = "./rules"
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    web: WebConfig = field(default_factory=WebConfig)
    activity_capacity: int = DEFAULT_CAPACITY
    env_file: Optional[str] = None


def _resolve_path(base_path: Path, target_path: str) -> str:
    """Resolve a path relative to the base config file if it's not absolute."""
    target = Path(target_path)
    if target.is_absolute():
        return str(target)
    return str((base_path.parent / target).resolve())


def _positive_int(raw: str, name: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a whole number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _port(raw: str, name: str) -> int:
    value = _positive_int(raw, name)
    if value > 65535:
        raise ValueError(f"{name} must be a valid port number, got {value}")
    return value


def _flag(raw: str, default: bool = True) -> bool:
    # Anything other than true/false keeps the default.
    normalised = raw.strip().lower()
    if normalised in ("true", "false"):
        return normalised == "true"
    return default


def parse_env_config(path: str) -> Dict[str, str]:
    """Parse environment variables from XML."""
    env_vars: Dict[str, str] = {}
    if not path:
        return env_vars

    logger.info("Loading environment configuration from %s", path)
    try:
        tree = ET.parse(path)
        root = tree.getroot()
        for var in root.findall("variable"):
            name = var.attrib.get("name")
            value = var.text
            if name and value:
                env_vars[name] = value.strip()
    except Exception as exc:
        logger.warning("Failed to load environment config: %s", exc)
        raise

    return env_vars


def parse_app_config(path: str) -> AppConfig:
    """Parse the main application configuration XML."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.info("Loading application configuration from %s", config_path)
    tree = ET.parse(config_path)
    root = tree.getroot()
    config = AppConfig()

    # Miniflux
    mf_node = root.find("miniflux")
    if mf_node is not None:
        config.miniflux.url = (mf_node.findtext("url") or "").strip()
        config.miniflux.token = (mf_node.findtext("token") or "").strip()
        timeout = mf_node.findtext("timeout")
        if timeout:
            config.miniflux.timeout = float(timeout)
        page_size = mf_node.findtext("page-size")
        if page_size:
            config.miniflux.page_size = _positive_int(page_size, "page-size")
        max_pages = mf_node.findtext("max-pages")
        if max_pages:
            config.miniflux.max_pages = _positive_int(max_pages, "max-pages")

    rules_dir = root.findtext("rules-dir")
    if rules_dir:
        config.rules_dir = _resolve_path(config_path, rules_dir.strip())

    poll_interval = root.findtext("poll-interval")
    if poll_interval:
        config.sync.poll_interval = _positive_int(poll_interval, "poll-interval")
    concurrency = root.findtext("concurrency")
    if concurrency:
        config.sync.concurrency = _positive_int(concurrency, "concurrency")

    capacity = root.findtext("activity-capacity")
    if capacity:
        config.activity_capacity = _positive_int(capacity, "activity-capacity")

    # Logging
    log_node = root.find("logging")
    if log_node is not None:
        config.logging.level = log_node.findtext("level", "INFO")
        log_file = log_node.findtext("file")
        if log_file:
            config.logging.file = _resolve_path(config_path, log_file)

    web_node = root.find("web")
    if web_node is not None:
        enabled = web_node.findtext("enabled")
        if enabled:
            config.web.enabled = _flag(enabled)
        port = web_node.findtext("port")
        if port:
            config.web.port = _port(port, "web/port")

    env_node = root.find("env")
    if env_node is not None and env_node.text:
        config.env_file = _resolve_path(config_path, env_node.text.strip())

    return config


def apply_environment(
    config: AppConfig,
    environ: Optional[Mapping[str, str]] = None,
    require_credentials: bool = True,
) -> AppConfig:
    """Override ``config`` from environment variables and validate it.

    Commands that never talk to Miniflux pass ``require_credentials=False``.
    """
    env = os.environ if environ is None else environ

    config.miniflux.url = env.get("MINIFLUX_URL", config.miniflux.url)
    config.miniflux.token = env.get("MINIFLUX_API_TOKEN", config.miniflux.token)
    config.rules_dir = env.get("MINIFLUX_FILTER_RULES_DIR", config.rules_dir)
    config.logging.level = env.get("MINIFLUX_FILTER_LOG_LEVEL", config.logging.level)
    if "MINIFLUX_FILTER_POLL_INTERVAL" in env:
        config.sync.poll_interval = _positive_int(
            env["MINIFLUX_FILTER_POLL_INTERVAL"], "MINIFLUX_FILTER_POLL_INTERVAL"
        )
    if "MINIFLUX_FILTER_CONCURRENCY" in env:
        config.sync.concurrency = _positive_int(
            env["MINIFLUX_FILTER_CONCURRENCY"], "MINIFLUX_FILTER_CONCURRENCY"
        )

    if "MINIFLUX_FILTER_WEB_ENABLED" in env:
        config.web.enabled = _flag(env["MINIFLUX_FILTER_WEB_ENABLED"])
    if "MINIFLUX_FILTER_WEB_PORT" in env:
        config.web.port = _port(
            env["MINIFLUX_FILTER_WEB_PORT"], "MINIFLUX_FILTER_WEB_PORT"
        )

    if not require_credentials:
        return config

    url = config.miniflux.url.strip()
    if not url:
        raise ValueError("MINIFLUX_URL is required.")
    if not url.startswith(("http://", "https://")):
        raise ValueError("MINIFLUX_URL must start with http:// or https://")
    config.miniflux.url = url.rstrip("/")

    if not config.miniflux.token.strip():
        raise ValueError("MINIFLUX_API_TOKEN cannot be empty.")

    return config


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    require_credentials: bool = True,
) -> AppConfig:
    """Load the XML config (if any), its env file, then environment overrides."""
    config = parse_app_config(path) if path else AppConfig()
    if config.env_file:
        os.environ.update(parse_env_config(config.env_file))
    return apply_environment(config, environ, require_credentials)
