"""
Pydantic models for MCP tool inputs.

Every tool input model validates node/storage names strictly so nothing
unexpected is spliced into a Proxmox API path. Models that send a payload
expose ``to_params()``: absent optional fields are omitted and boolean
flags are encoded per field according to ``FLAG_ENCODING``.
"""
from __future__ import annotations

import re
from typing import Any, Callable, ClassVar, Dict, Literal, Optional, Tuple
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Input validation helpers
# ---------------------------------------------------------------------------

_SAFE_NAME_RE = re.compile(r"^[a-zA-Z0-9_\-]{1,64}$")
_SAFE_TASKID_RE = re.compile(r"^[A-Za-z0-9:@!._\-]{1,256}$")
_SAFE_FILENAME_RE = re.compile(r"^[A-Za-z0-9_.+\-]{1,255}$")
_SAFE_VOLID_RE = re.compile(r"^[a-zA-Z0-9_\-]{1,64}:iso/[A-Za-z0-9_.+\-]{1,255}$")

VMID_MIN = 100
VMID_MAX = 999_999_999


def _require_safe_name(v: Optional[str]) -> Optional[str]:
    if v is not None and not _SAFE_NAME_RE.match(v):
        raise ValueError(f"'{v}' contains illegal characters or is too long")
    return v


# ---------------------------------------------------------------------------
# Boolean flag encoding
# ---------------------------------------------------------------------------
# The Proxmox API is not uniform about flags: some endpoints were written
# against string "1"/"0", others take integers. The table fixes the typed
# value to_params() hands back; once client.encode_params() stringifies the
# payload both kinds reach the wire as the same "1"/"0" form value.

def _string_flag(value: bool) -> str:
    return "1" if value else "0"


def _int_flag(value: bool) -> int:
    return 1 if value else 0


FLAG_ENCODING: Dict[str, Callable[[bool], Any]] = {
    "onboot": _string_flag,
    "unprivileged": _string_flag,
    "force": _string_flag,
    "dist_upgrade": _string_flag,
    "agent": _string_flag,
    "enable": _int_flag,
}


def encode_flag(field: str, value: bool) -> Any:
    return FLAG_ENCODING.get(field, _string_flag)(value)


# ---------------------------------------------------------------------------
# Base classes
# ---------------------------------------------------------------------------


class ToolInput(BaseModel):
    """Base for all tool inputs.

    ``_payload_fields`` lists the attributes that travel to the API and
    ``_renames`` maps attribute names to Proxmox parameter names.
    """

    model_config = ConfigDict(populate_by_name=True)

    _payload_fields: ClassVar[Tuple[str, ...]] = ()
    _renames: ClassVar[Dict[str, str]] = {}

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for name in self._payload_fields:
            value = getattr(self, name)
            if value is None:
                continue
            key = self._renames.get(name, name)
            params[key] = encode_flag(key, value) if isinstance(value, bool) else value
        return params


class EmptyInput(ToolInput):
    """Input for tools without arguments."""


class NodeInput(ToolInput):
    """Input requiring a node name."""
    node: str = Field(..., description="Proxmox node name", min_length=1, max_length=64)

    @field_validator("node")
    @classmethod
    def sanitize_node(cls, v: str) -> str:
        return _require_safe_name(v)


class OptionalNodeInput(ToolInput):
    """Input with an optional node name (all nodes when omitted)."""
    node: Optional[str] = Field(
        default=None, description="Node name (optional, defaults to all nodes)", max_length=64
    )

    @field_validator("node")
    @classmethod
    def sanitize_node(cls, v: Optional[str]) -> Optional[str]:
        return _require_safe_name(v)


class VmInput(NodeInput):
    """Input for a QEMU VM or LXC operation on a specific node."""
    vmid: int = Field(..., description="VM or container ID", ge=VMID_MIN, le=VMID_MAX)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class StorageStatusInput(OptionalNodeInput):
    """Optional node and storage filter for storage status."""
    storage: Optional[str] = Field(default=None, description="Storage name (optional)", max_length=64)

    @field_validator("storage")
    @classmethod
    def sanitize_storage(cls, v: Optional[str]) -> Optional[str]:
        return _require_safe_name(v)


class GuestQueryInput(OptionalNodeInput):
    """Optional node and vmid filter for VM/container status."""
    vmid: Optional[int] = Field(default=None, description="VM or container ID (optional)", ge=VMID_MIN, le=VMID_MAX)


class ListTasksInput(ToolInput):
    limit: int = Field(default=50, description="Maximum number of tasks to return", ge=1, le=200)


class TaskInput(NodeInput):
    """Input identifying a task by node and UPID."""
    taskid: str = Field(..., description="Task ID (UPID)", min_length=1, max_length=256)

    @field_validator("taskid")
    @classmethod
    def sanitize_taskid(cls, v: str) -> str:
        if not _SAFE_TASKID_RE.match(v):
            raise ValueError("task id contains illegal characters")
        return v


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class CreateVmInput(VmInput):
    """Input for creating a QEMU VM, optionally configured for cloud-init."""

    name: Optional[str] = Field(default=None, description="VM name")
    cores: Optional[int] = Field(default=None, description="Number of CPU cores", ge=1, le=128)
    sockets: Optional[int] = Field(default=None, description="Number of CPU sockets", ge=1, le=16)
    memory: int = Field(..., description="Memory in MB", ge=16)
    net0: Optional[str] = Field(default=None, description="Network interface 0 (e.g. 'virtio,bridge=vmbr0')")
    net1: Optional[str] = Field(default=None, description="Network interface 1")
    net2: Optional[str] = Field(default=None, description="Network interface 2")
    net3: Optional[str] = Field(default=None, description="Network interface 3")
    ide0: Optional[str] = Field(default=None, description="IDE device 0 (e.g. 'local:iso/ubuntu.iso,media=cdrom')")
    ide1: Optional[str] = Field(default=None, description="IDE device 1")
    ide2: Optional[str] = Field(default=None, description="IDE device 2")
    ide3: Optional[str] = Field(default=None, description="IDE device 3")
    sata0: Optional[str] = Field(default=None, description="SATA device 0")
    sata1: Optional[str] = Field(default=None, description="SATA device 1")
    scsi0: Optional[str] = Field(default=None, description="SCSI device 0 (e.g. 'local-lvm:32')")
    scsi1: Optional[str] = Field(default=None, description="SCSI device 1")
    scsi2: Optional[str] = Field(default=None, description="SCSI device 2")
    scsi3: Optional[str] = Field(default=None, description="SCSI device 3")
    scsihw: Optional[str] = Field(default=None, description="SCSI controller (e.g. 'virtio-scsi-pci')")
    bootdisk: Optional[str] = Field(default=None, description="Boot disk (e.g. 'scsi0')")
    boot: Optional[str] = Field(default=None, description="Boot order (e.g. 'order=scsi0;ide2')")
    ostype: Optional[str] = Field(default=None, description="OS type (e.g. 'l26', 'win11')")
    onboot: Optional[bool] = Field(default=None, description="Start VM on host boot")
    desc: Optional[str] = Field(default=None, description="Description")
    cloudinit: Optional[bool] = Field(default=None, description="Apply cloud-init settings (default: true)")
    nameserver: Optional[str] = Field(default=None, description="DNS nameserver for cloud-init")
    searchdomain: Optional[str] = Field(default=None, description="Search domain for cloud-init")
    ipconfig: Optional[str] = Field(
        default=None, description="cloud-init IP config (e.g. 'ip=192.168.1.100/24,gw=192.168.1.1')"
    )
    sshkeys: Optional[str] = Field(default=None, description="SSH public keys for cloud-init")
    user: Optional[str] = Field(default=None, description="cloud-init username")
    password: Optional[str] = Field(default=None, description="cloud-init user password")
    install_guest_agent: Optional[bool] = Field(
        default=None,
        alias="installGuestAgent",
        description="Enable the QEMU guest agent (default: true)",
    )

    _payload_fields: ClassVar[Tuple[str, ...]] = (
        "vmid", "memory", "name", "cores", "sockets",
        "net0", "net1", "net2", "net3",
        "ide0", "ide1", "ide2", "ide3", "sata0", "sata1",
        "scsi0", "scsi1", "scsi2", "scsi3",
        "scsihw", "bootdisk", "boot", "ostype", "onboot", "desc",
    )
    _renames: ClassVar[Dict[str, str]] = {"desc": "description"}

    def to_params(self) -> Dict[str, Any]:
        params = super().to_params()
        if self.cloudinit is not False:
            cloud = {
                "nameserver": self.nameserver,
                "searchdomain": self.searchdomain,
                "ipconfig0": self.ipconfig,
                # Proxmox expects the key list percent-encoded
                "sshkeys": quote(self.sshkeys, safe="") if self.sshkeys else None,
                "ciuser": self.user,
                "cipassword": self.password,
            }
            params.update({k: v for k, v in cloud.items() if v})
        if self.install_guest_agent is not False:
            params["agent"] = encode_flag("agent", True)
        return params


class CreateContainerInput(VmInput):
    """Input for creating an LXC container."""

    hostname: str = Field(..., description="Container hostname", min_length=1, max_length=253)
    ostemplate: str = Field(
        ..., description="OS template (e.g. 'local:vztmpl/debian-12-standard_12.2-1_amd64.tar.zst')"
    )
    cores: Optional[int] = Field(default=None, description="Number of CPU cores", ge=1, le=128)
    memory: int = Field(..., description="Memory in MB", ge=16)
    swap: Optional[int] = Field(default=None, description="Swap in MB", ge=0)
    net0: Optional[str] = Field(default=None, description="Network interface (e.g. 'name=eth0,bridge=vmbr0,ip=dhcp')")
    ipaddr: Optional[str] = Field(default=None, description="IPv4 address in CIDR form for eth0")
    gateway: Optional[str] = Field(default=None, description="IPv4 gateway for eth0")
    password: Optional[str] = Field(default=None, description="Root password")
    nameserver: Optional[str] = Field(default=None, description="DNS server")
    ssh_public_keys: Optional[str] = Field(default=None, description="SSH public keys")
    unprivileged: Optional[bool] = Field(default=None, description="Unprivileged container")
    description: Optional[str] = Field(default=None, description="Description")

    _payload_fields: ClassVar[Tuple[str, ...]] = (
        "vmid", "hostname", "ostemplate", "memory", "cores", "swap",
        "password", "nameserver", "ssh_public_keys", "unprivileged", "description",
    )
    _renames: ClassVar[Dict[str, str]] = {"ssh_public_keys": "ssh-public-keys"}

    def network(self) -> Optional[str]:
        """Build net0, folding ipaddr/gateway into it when given separately."""
        net0 = self.net0
        if not self.ipaddr and not self.gateway:
            return net0
        parts = [net0] if net0 else ["name=eth0", "bridge=vmbr0"]
        if self.ipaddr and "ip=" not in (net0 or ""):
            parts.append(f"ip={self.ipaddr}")
        if self.gateway and "gw=" not in (net0 or ""):
            parts.append(f"gw={self.gateway}")
        return ",".join(parts)

    def to_params(self) -> Dict[str, Any]:
        params = super().to_params()
        net0 = self.network()
        if net0:
            params["net0"] = net0
        return params


class DeleteGuestInput(VmInput):
    force: Optional[bool] = Field(default=None, description="Force delete (removes it even if in use)")

    def to_params(self) -> Dict[str, Any]:
        # Proxmox treats any presence of the flag as set
        return {"force": encode_flag("force", True)} if self.force else {}


class GuestTimeoutInput(VmInput):
    """Input for stop/shutdown with an optional timeout."""
    timeout: Optional[int] = Field(
        default=None, description="Timeout in seconds before force shutdown", ge=1, le=3600
    )

    _payload_fields: ClassVar[Tuple[str, ...]] = ("timeout",)


class ConsoleInput(VmInput):
    type: Literal["serial", "websocket"] = Field(default="websocket", description="Console type")

    _payload_fields: ClassVar[Tuple[str, ...]] = ("type",)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


class UpgradeInput(NodeInput):
    dist_upgrade: Optional[bool] = Field(default=None, description="Perform distribution upgrade")

    def to_params(self) -> Dict[str, Any]:
        return {"dist_upgrade": encode_flag("dist_upgrade", True)} if self.dist_upgrade else {}


# ---------------------------------------------------------------------------
# Guest agent
# ---------------------------------------------------------------------------


class SshInput(VmInput):
    username: str = Field(..., description="Username to login as", min_length=1, max_length=64)
    command: str = Field(default="/bin/bash", description="Command to run (defaults to an interactive shell)")

    _payload_fields: ClassVar[Tuple[str, ...]] = ("username", "command")


class SetIpInput(VmInput):
    interface: str = Field(..., description="Network interface name (e.g. 'eth0')", min_length=1, max_length=32)
    ip: str = Field(..., description="IP address")
    netmask: Optional[str] = Field(default=None, description="Netmask (e.g. '24')")
    gateway: Optional[str] = Field(default=None, description="Gateway IP")

    _payload_fields: ClassVar[Tuple[str, ...]] = ("interface", "ip", "netmask", "gateway")


class HostnameInput(VmInput):
    hostname: str = Field(..., description="New hostname", min_length=1, max_length=253)

    _payload_fields: ClassVar[Tuple[str, ...]] = ("hostname",)


class CreateUserInput(VmInput):
    username: str = Field(..., description="Username to create", min_length=1, max_length=64)
    password: Optional[str] = Field(default=None, description="Password (for password auth)")
    ssh_keys: Optional[str] = Field(default=None, description="SSH public keys (for key auth)")
    groups: Optional[str] = Field(default=None, description="Comma-separated list of groups")
    shell: Optional[str] = Field(default=None, description="Login shell (e.g. '/bin/bash')")

    _payload_fields: ClassVar[Tuple[str, ...]] = ("username", "password", "ssh_keys", "groups", "shell")


class UserPasswordInput(VmInput):
    username: str = Field(..., description="Username", min_length=1, max_length=64)
    password: str = Field(..., description="New password", min_length=1)

    _payload_fields: ClassVar[Tuple[str, ...]] = ("username", "password")


class CommandInput(VmInput):
    command: str = Field(..., description="Command to run", min_length=1)
    timeout: Optional[int] = Field(default=None, description="Timeout in seconds", ge=1, le=3600)

    _payload_fields: ClassVar[Tuple[str, ...]] = ("command", "timeout")


# ---------------------------------------------------------------------------
# ISO images
# ---------------------------------------------------------------------------


class IsoListInput(NodeInput):
    storage: Optional[str] = Field(default=None, description="Storage name (optional)", max_length=64)

    @field_validator("storage")
    @classmethod
    def sanitize_storage(cls, v: Optional[str]) -> Optional[str]:
        return _require_safe_name(v)


class StorageInput(NodeInput):
    storage: str = Field(..., description="Storage name (e.g. 'local')", min_length=1, max_length=64)

    @field_validator("storage")
    @classmethod
    def sanitize_storage(cls, v: str) -> str:
        return _require_safe_name(v)


class DownloadIsoInput(StorageInput):
    filename: str = Field(..., description="ISO filename (e.g. 'ubuntu-24.04.iso')")
    url: str = Field(..., description="Download URL for the ISO")

    _payload_fields: ClassVar[Tuple[str, ...]] = ("filename", "url")

    @field_validator("filename")
    @classmethod
    def sanitize_filename(cls, v: str) -> str:
        if not _SAFE_FILENAME_RE.match(v):
            raise ValueError("filename contains illegal characters")
        return v

    @field_validator("url")
    @classmethod
    def require_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v

    def to_params(self) -> Dict[str, Any]:
        return {"content": "iso", **super().to_params()}


class DeleteIsoInput(StorageInput):
    filename: str = Field(..., description="ISO filename or full volume id ('local:iso/x.iso')")

    @field_validator("filename")
    @classmethod
    def sanitize_filename(cls, v: str) -> str:
        if not (_SAFE_FILENAME_RE.match(v) or _SAFE_VOLID_RE.match(v)):
            raise ValueError("filename contains illegal characters")
        return v

    @property
    def volid(self) -> str:
        if ":" in self.filename:
            return self.filename
        return f"{self.storage}:iso/{self.filename}"


# ---------------------------------------------------------------------------
# Firewall
# ---------------------------------------------------------------------------


class FirewallRuleInput(VmInput):
    """A firewall rule given as 'direction,action[,dport[/proto]][,proto]'."""

    rule: str = Field(..., description="Firewall rule (e.g. 'in,REJECT,22/tcp' or 'out,ACCEPT,any,any')")
    pos: Optional[int] = Field(default=None, description="Position for the rule", ge=0)

    @field_validator("rule")
    @classmethod
    def check_rule(cls, v: str) -> str:
        parse_firewall_rule(v)
        return v

    def to_params(self) -> Dict[str, Any]:
        params = parse_firewall_rule(self.rule)
        params["enable"] = encode_flag("enable", True)
        if self.pos is not None:
            params["pos"] = self.pos
        return params


class FirewallRuleIdInput(VmInput):
    ruleid: str = Field(..., description="Rule position as returned by the list tool")

    @field_validator("ruleid")
    @classmethod
    def require_digits(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError("ruleid must be a non-negative integer")
        return v


_RULE_DIRECTIONS = ("in", "out")
_RULE_ACTIONS = ("ACCEPT", "DROP", "REJECT")
_PORT_RE = re.compile(r"^\d{1,5}([:\-]\d{1,5})?$")
_PROTO_RE = re.compile(r"^[a-z0-9\-]{1,16}$")


def parse_firewall_rule(rule: str) -> Dict[str, Any]:
    """Split a compact rule string into Proxmox firewall rule parameters."""
    parts = [p.strip() for p in rule.split(",")]
    if len(parts) < 2 or len(parts) > 4:
        raise ValueError("rule must look like 'direction,action[,dport[/proto]][,proto]'")

    direction = parts[0].lower()
    action = parts[1].upper()
    if direction not in _RULE_DIRECTIONS:
        raise ValueError(f"rule direction must be one of {_RULE_DIRECTIONS}")
    if action not in _RULE_ACTIONS:
        raise ValueError(f"rule action must be one of {_RULE_ACTIONS}")

    params: Dict[str, Any] = {"type": direction, "action": action}
    dport, proto = None, None
    if len(parts) >= 3 and parts[2].lower() != "any":
        dport, _, proto = parts[2].partition("/")
    if len(parts) == 4 and parts[3].lower() != "any":
        proto = parts[3]

    if dport:
        if not _PORT_RE.match(dport):
            raise ValueError(f"invalid port '{dport}'")
        params["dport"] = dport
    if proto:
        proto = proto.lower()
        if not _PROTO_RE.match(proto):
            raise ValueError(f"invalid protocol '{proto}'")
        params["proto"] = proto
    elif dport:
        # Proxmox rejects a port match without a protocol
        params["proto"] = "tcp"
    return params
