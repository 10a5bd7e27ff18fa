"""
macOS Keychain lookup for the Proxmox host and password.

Wraps the built-in `security` CLI so the password never has to live in the
process environment or in the YAML config file. On hosts without
/usr/bin/security every lookup simply returns ``None``.
"""
from __future__ import annotations

import subprocess
from typing import Optional

import structlog

log = structlog.get_logger(__name__)

_SERVICE = "pve-mcp"
_SECURITY_BIN = "/usr/bin/security"


def _run_security(*args: str) -> Optional[subprocess.CompletedProcess[str]]:
    """Run a macOS `security` command, or return None if the CLI is missing."""
    try:
        return subprocess.run(
            [_SECURITY_BIN, *args],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        return None


def retrieve_secret(account: str) -> Optional[str]:
    """Return the Keychain secret stored under *account*, or ``None``."""
    result = _run_security(
        "find-generic-password",
        "-s", _SERVICE,
        "-a", account,
        "-w",
    )
    if result is None:
        log.debug("keychain.unavailable", account=account)
        return None
    if result.returncode != 0:
        log.debug("keychain.not_found", account=account)
        return None
    value = result.stdout.strip()
    log.info("keychain.retrieved", account=account)
    return value or None
