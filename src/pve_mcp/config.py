"""
Configuration loading for the Proxmox VE MCP server.

Priority order per key (highest → lowest):
  1. Environment variables (PROXMOX_HOST, PROXMOX_USER, PROXMOX_PASSWORD, …)
  2. macOS Keychain (pve-mcp / proxmox-host, proxmox-password)
  3. ~/.config/pve-mcp/config.yaml
  4. Built-in defaults

``load_settings()`` returns an immutable ``Settings`` value that the server
passes down to the session layer; nothing here is cached at module level.

Never write secrets back to any file from this module.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog
import yaml

from pve_mcp.keychain import retrieve_secret

log = structlog.get_logger(__name__)

_CONFIG_FILE = Path.home() / ".config" / "pve-mcp" / "config.yaml"

_KEYCHAIN_HOST_ACCOUNT = "proxmox-host"
_KEYCHAIN_PASSWORD_ACCOUNT = "proxmox-password"

TRANSPORTS = ("stdio", "http")

# Proxmox tickets are valid for two hours; stay well inside that.
MAX_TICKET_CACHE_TTL = 3600.0


class ConfigError(RuntimeError):
    """Raised when required configuration is missing or malformed."""


@dataclass(frozen=True, repr=False)
class Settings:
    """Runtime configuration resolved once at startup."""

    host: str
    user: str
    password: str
    port: int = 8006
    verify_ssl: bool = True
    timeout: float = 30.0
    ticket_cache_ttl: float = 0.0
    transport: str = "stdio"
    http_host: str = "127.0.0.1"
    http_port: int = 3000

    @property
    def api_base(self) -> str:
        return f"https://{self.host}:{self.port}/api2/json"

    def __repr__(self) -> str:
        return (
            f"Settings(host={self.host!r}, port={self.port}, user={self.user!r}, "
            f"verify_ssl={self.verify_ssl}, timeout={self.timeout}, "
            f"ticket_cache_ttl={self.ticket_cache_ttl}, transport={self.transport!r})"
        )


def _load_yaml_config(path: Path) -> dict:
    """Load optional YAML config file, returning an empty dict if absent."""
    if path.exists():
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level")
        log.info("config.yaml_loaded", path=str(path))
        return data
    return {}


def _parse_bool(raw: Any) -> bool:
    return str(raw).strip().lower() not in ("false", "0", "no", "off")


def _parse_number(name: str, raw: Any, kind: type) -> Any:
    try:
        return kind(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    config_file: Optional[Path] = None,
    use_keychain: bool = True,
) -> Settings:
    """Resolve and return the runtime ``Settings``.

    Raises ``ConfigError`` if a required value cannot be found in any source
    or an optional value cannot be parsed.
    """
    env = os.environ if env is None else env
    yaml_cfg = _load_yaml_config(config_file or _CONFIG_FILE)

    def keychain(account: str) -> Optional[str]:
        return retrieve_secret(account) if use_keychain else None

    host = env.get("PROXMOX_HOST") or keychain(_KEYCHAIN_HOST_ACCOUNT) or yaml_cfg.get("host")
    user = env.get("PROXMOX_USER") or yaml_cfg.get("user")
    password = (
        env.get("PROXMOX_PASSWORD")
        or keychain(_KEYCHAIN_PASSWORD_ACCOUNT)
        or yaml_cfg.get("password")
    )

    missing = [
        name
        for name, value in (
            ("PROXMOX_HOST", host),
            ("PROXMOX_USER", user),
            ("PROXMOX_PASSWORD", password),
        )
        if not value
    ]
    if missing:
        raise ConfigError(
            f"{', '.join(missing)} not set. Provide them as environment variables, "
            f"store host/password in Keychain (service 'pve-mcp'), or add them to "
            f"{config_file or _CONFIG_FILE}"
        )

    port = _parse_number("PROXMOX_PORT", env.get("PROXMOX_PORT") or yaml_cfg.get("port", 8006), int)
    timeout = _parse_number(
        "PROXMOX_TIMEOUT", env.get("PROXMOX_TIMEOUT") or yaml_cfg.get("timeout", 30.0), float
    )
    ttl = _parse_number(
        "PROXMOX_TICKET_CACHE_TTL",
        env.get("PROXMOX_TICKET_CACHE_TTL") or yaml_cfg.get("ticket_cache_ttl", 0),
        float,
    )
    if ttl > MAX_TICKET_CACHE_TTL:
        raise ConfigError(
            f"PROXMOX_TICKET_CACHE_TTL must not exceed {MAX_TICKET_CACHE_TTL:.0f} seconds"
        )

    transport = str(env.get("MCP_TRANSPORT") or yaml_cfg.get("transport", "stdio")).lower()
    if transport not in TRANSPORTS:
        raise ConfigError(f"MCP_TRANSPORT must be one of {TRANSPORTS}, got {transport!r}")

    http_port = _parse_number(
        "MCP_HTTP_PORT", env.get("MCP_HTTP_PORT") or yaml_cfg.get("http_port", 3000), int
    )

    settings = Settings(
        host=str(host),
        user=str(user),
        password=str(password),
        port=port,
        verify_ssl=_parse_bool(env.get("PROXMOX_VERIFY_SSL") or yaml_cfg.get("verify_ssl", "true")),
        timeout=timeout,
        ticket_cache_ttl=ttl,
        transport=transport,
        http_host=str(env.get("MCP_HTTP_HOST") or yaml_cfg.get("http_host", "127.0.0.1")),
        http_port=http_port,
    )
    log.info("config.resolved", settings=repr(settings))
    return settings
