"""
Tool registry for the Proxmox VE MCP server.

Each tool pairs an input model with an async handler that maps the
validated input onto one or more Proxmox API calls. The input model's JSON
schema is what ``list_tools`` advertises, and ``action`` is the phrase used
in error messages ("Error <action>: <message>").

Tools
─────
  Status        health_check, get_node_status, get_storage_status,
                get_cluster_status, get_vm_status, get_container_status,
                get_running_vms, list_tasks
  Lifecycle     create_vm, create_container, delete_vm, delete_container,
                start/stop/shutdown/restart_vm, start/stop/shutdown/restart_container,
                vm_console
  Maintenance   get_proxmox_version, get_updates, upgrade_proxmox, get_task_status
  Guest agent   ssh_to_vm, set_vm_ip, set_vm_hostname, create_vm_user,
                set_vm_user_password, run_vm_command, get_vm_interfaces
  ISO images    list_isos, download_iso, delete_iso, get_iso_download_status
  Firewall      enable/disable_vm_firewall, enable/disable_container_firewall,
                create/list/delete_vm_firewall_rule(s),
                create/list/delete_container_firewall_rule(s)
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Type
from urllib.parse import quote

from pve_mcp.client import ProxmoxClient
from pve_mcp.models import (
    CommandInput,
    ConsoleInput,
    CreateContainerInput,
    CreateUserInput,
    CreateVmInput,
    DeleteGuestInput,
    DeleteIsoInput,
    DownloadIsoInput,
    EmptyInput,
    FirewallRuleIdInput,
    FirewallRuleInput,
    GuestQueryInput,
    GuestTimeoutInput,
    HostnameInput,
    IsoListInput,
    ListTasksInput,
    NodeInput,
    OptionalNodeInput,
    SetIpInput,
    SshInput,
    StorageStatusInput,
    TaskInput,
    ToolInput,
    UpgradeInput,
    UserPasswordInput,
    VmInput,
    encode_flag,
)

Handler = Callable[[ProxmoxClient, Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    model: Type[ToolInput]
    action: str
    handler: Handler

    def input_schema(self) -> Dict[str, Any]:
        schema = self.model.model_json_schema()
        schema.setdefault("properties", {})
        schema.pop("title", None)
        return schema


TOOLS: Dict[str, ToolSpec] = {}


def tool(name: str, description: str, model: Type[ToolInput], action: str) -> Callable[[Handler], Handler]:
    """Register *handler* under *name*."""

    def decorator(handler: Handler) -> Handler:
        if name in TOOLS:
            raise ValueError(f"duplicate tool name: {name}")
        TOOLS[name] = ToolSpec(name, description, model, action, handler)
        return handler

    return decorator


def _guest_path(kind: str, node: str, vmid: int) -> str:
    return f"nodes/{node}/{kind}/{vmid}"


def _task_path(node: str, taskid: str) -> str:
    return f"nodes/{node}/tasks/{quote(taskid, safe='')}/status"


# ═══════════════════════════════════════════════════════════════════════════
# Status
# ═══════════════════════════════════════════════════════════════════════════


@tool(
    "health_check",
    "Validate Proxmox connectivity and credentials. Returns the Proxmox VE version.",
    EmptyInput,
    "checking Proxmox health",
)
async def health_check(client: ProxmoxClient, inp: EmptyInput) -> Any:
    version = await client.get("version")
    return {"status": "ok", "proxmox": version}


@tool(
    "get_node_status",
    "Get status of Proxmox nodes. Without a node name, lists every node in the cluster.",
    OptionalNodeInput,
    "getting node status",
)
async def get_node_status(client: ProxmoxClient, inp: OptionalNodeInput) -> Any:
    if inp.node:
        return await client.get(f"nodes/{inp.node}/status")
    return await client.get("nodes")


@tool(
    "get_storage_status",
    "Get status of Proxmox storage, optionally scoped to a node and/or a storage id.",
    StorageStatusInput,
    "getting storage status",
)
async def get_storage_status(client: ProxmoxClient, inp: StorageStatusInput) -> Any:
    if inp.node and inp.storage:
        return await client.get(f"nodes/{inp.node}/storage/{inp.storage}/status")
    if inp.node:
        return await client.get(f"nodes/{inp.node}/storage")
    if inp.storage:
        return await client.get(f"storage/{inp.storage}")
    return await client.get("storage")


@tool(
    "get_cluster_status",
    "Get Proxmox cluster status: nodes, online state and quorum.",
    EmptyInput,
    "getting cluster status",
)
async def get_cluster_status(client: ProxmoxClient, inp: EmptyInput) -> Any:
    return await client.get("cluster/status")


async def _guest_status(client: ProxmoxClient, kind: str, inp: GuestQueryInput) -> Any:
    if inp.node and inp.vmid:
        return await client.get(f"{_guest_path(kind, inp.node, inp.vmid)}/status/current")
    if inp.node:
        return await client.get(f"nodes/{inp.node}/{kind}")
    # No node given: search cluster-wide
    resources = await client.get("cluster/resources", type="vm") or []
    matches = [
        r for r in resources
        if r.get("type") == kind and (inp.vmid is None or r.get("vmid") == inp.vmid)
    ]
    if inp.vmid is not None:
        return matches[0] if matches else None
    return matches


@tool(
    "get_vm_status",
    "Get status of Proxmox QEMU VMs. Give node and vmid for one VM, node alone for "
    "all VMs on it, or neither to search the whole cluster.",
    GuestQueryInput,
    "getting VM status",
)
async def get_vm_status(client: ProxmoxClient, inp: GuestQueryInput) -> Any:
    return await _guest_status(client, "qemu", inp)


@tool(
    "get_container_status",
    "Get status of Proxmox LXC containers. Give node and vmid for one container, node "
    "alone for all containers on it, or neither to search the whole cluster.",
    GuestQueryInput,
    "getting container status",
)
async def get_container_status(client: ProxmoxClient, inp: GuestQueryInput) -> Any:
    return await _guest_status(client, "lxc", inp)


@tool(
    "get_running_vms",
    "Get all running VMs and containers on a node.",
    NodeInput,
    "getting running VMs",
)
async def get_running_vms(client: ProxmoxClient, inp: NodeInput) -> Any:
    vms = await client.get(f"nodes/{inp.node}/qemu") or []
    containers = await client.get(f"nodes/{inp.node}/lxc") or []
    running_vms = [v for v in vms if v.get("status") == "running"]
    running_containers = [c for c in containers if c.get("status") == "running"]
    return {
        "running_vms": running_vms,
        "running_containers": running_containers,
        "total_running": len(running_vms) + len(running_containers),
    }


@tool(
    "list_tasks",
    "Return recent cluster-wide task history (50 tasks by default).",
    ListTasksInput,
    "listing tasks",
)
async def list_tasks(client: ProxmoxClient, inp: ListTasksInput) -> Any:
    tasks = await client.get("cluster/tasks") or []
    return [
        {
            "upid": t.get("upid"),
            "node": t.get("node"),
            "type": t.get("type"),
            "id": t.get("id"),
            "user": t.get("user"),
            "status": t.get("status"),
            "starttime": t.get("starttime"),
            "endtime": t.get("endtime"),
        }
        for t in tasks[: inp.limit]
    ]


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════════


@tool(
    "create_vm",
    "Create a new QEMU VM with optional cloud-init configuration. Returns the task UPID.",
    CreateVmInput,
    "creating VM",
)
async def create_vm(client: ProxmoxClient, inp: CreateVmInput) -> Any:
    task = await client.post(f"nodes/{inp.node}/qemu", **inp.to_params())
    return {"success": True, "vmid": inp.vmid, "task": task}


@tool(
    "create_container",
    "Create a new LXC container. Returns the task UPID.",
    CreateContainerInput,
    "creating container",
)
async def create_container(client: ProxmoxClient, inp: CreateContainerInput) -> Any:
    task = await client.post(f"nodes/{inp.node}/lxc", **inp.to_params())
    return {"success": True, "vmid": inp.vmid, "task": task}


@tool("delete_vm", "Delete a VM from Proxmox.", DeleteGuestInput, "deleting VM")
async def delete_vm(client: ProxmoxClient, inp: DeleteGuestInput) -> Any:
    task = await client.delete(_guest_path("qemu", inp.node, inp.vmid), **inp.to_params())
    return {"success": True, "message": f"VM {inp.vmid} deleted successfully", "task": task}


@tool("delete_container", "Delete a container from Proxmox.", DeleteGuestInput, "deleting container")
async def delete_container(client: ProxmoxClient, inp: DeleteGuestInput) -> Any:
    task = await client.delete(_guest_path("lxc", inp.node, inp.vmid), **inp.to_params())
    return {"success": True, "message": f"Container {inp.vmid} deleted successfully", "task": task}


def _power_tool(
    name: str,
    kind: str,
    command: str,
    model: Type[VmInput],
    description: str,
    action: str,
    message: str,
) -> None:
    label = "VM" if kind == "qemu" else "Container"

    async def handler(client: ProxmoxClient, inp: VmInput) -> Any:
        task = await client.post(
            f"{_guest_path(kind, inp.node, inp.vmid)}/status/{command}", **inp.to_params()
        )
        return {"success": True, "message": f"{label} {inp.vmid} {message}", "task": task}

    handler.__name__ = name
    tool(name, description, model, action)(handler)


_power_tool("start_vm", "qemu", "start", VmInput, "Start a VM.", "starting VM", "started")
_power_tool(
    "stop_vm", "qemu", "stop", GuestTimeoutInput,
    "Stop a VM immediately (hard power-off).", "stopping VM", "stopped",
)
_power_tool(
    "shutdown_vm", "qemu", "shutdown", GuestTimeoutInput,
    "Shut down a VM gracefully via ACPI.", "shutting down VM", "shutdown initiated",
)
_power_tool("restart_vm", "qemu", "reboot", VmInput, "Restart a VM.", "restarting VM", "restarted")
_power_tool(
    "start_container", "lxc", "start", VmInput,
    "Start a container.", "starting container", "started",
)
_power_tool(
    "stop_container", "lxc", "stop", GuestTimeoutInput,
    "Stop a container immediately.", "stopping container", "stopped",
)
_power_tool(
    "shutdown_container", "lxc", "shutdown", GuestTimeoutInput,
    "Shut down a container gracefully.", "shutting down container", "shutdown initiated",
)
_power_tool(
    "restart_container", "lxc", "reboot", VmInput,
    "Restart a container.", "restarting container", "restarted",
)


@tool("vm_console", "Open a VM console (websocket or serial).", ConsoleInput, "accessing console")
async def vm_console(client: ProxmoxClient, inp: ConsoleInput) -> Any:
    return await client.post(f"{_guest_path('qemu', inp.node, inp.vmid)}/console", **inp.to_params())


# ═══════════════════════════════════════════════════════════════════════════
# Maintenance
# ═══════════════════════════════════════════════════════════════════════════


@tool("get_proxmox_version", "Get Proxmox VE version.", EmptyInput, "getting Proxmox version")
async def get_proxmox_version(client: ProxmoxClient, inp: EmptyInput) -> Any:
    return await client.get("version")


@tool(
    "get_updates",
    "List available package updates for one node, or for every node when none is given.",
    OptionalNodeInput,
    "getting updates",
)
async def get_updates(client: ProxmoxClient, inp: OptionalNodeInput) -> Any:
    if inp.node:
        return await client.get(f"nodes/{inp.node}/apt/update")
    nodes = await client.get("nodes") or []
    updates: Dict[str, Any] = {}
    for n in nodes:
        name = n.get("node")
        if name:
            updates[name] = await client.get(f"nodes/{name}/apt/update")
    return updates


@tool("upgrade_proxmox", "Upgrade Proxmox VE packages on a node.", UpgradeInput, "upgrading Proxmox")
async def upgrade_proxmox(client: ProxmoxClient, inp: UpgradeInput) -> Any:
    task = await client.post(f"nodes/{inp.node}/apt/upgrade", **inp.to_params())
    return {"success": True, "taskid": task}


@tool("get_task_status", "Get status of a running task.", TaskInput, "getting task status")
async def get_task_status(client: ProxmoxClient, inp: TaskInput) -> Any:
    return await client.get(_task_path(inp.node, inp.taskid))


# ═══════════════════════════════════════════════════════════════════════════
# Guest agent
# ═══════════════════════════════════════════════════════════════════════════


def _agent_tool(name: str, endpoint: str, model: Type[VmInput], description: str, action: str) -> None:
    async def handler(client: ProxmoxClient, inp: VmInput) -> Any:
        return await client.post(
            f"{_guest_path('qemu', inp.node, inp.vmid)}/{endpoint}", **inp.to_params()
        )

    handler.__name__ = name
    tool(name, description, model, action)(handler)


_agent_tool("ssh_to_vm", "ssh", SshInput, "Run a login shell or command in a VM as a user.", "connecting to VM")
_agent_tool(
    "set_vm_ip", "agent/set-ip", SetIpInput,
    "Set IP address for a VM (requires guest agent).", "setting VM IP",
)
_agent_tool(
    "set_vm_hostname", "agent/set-hostname", HostnameInput,
    "Set hostname for a VM (requires guest agent).", "setting VM hostname",
)
_agent_tool(
    "create_vm_user", "agent/user-set-password", CreateUserInput,
    "Create a new user in a VM (requires guest agent).", "creating VM user",
)
_agent_tool(
    "set_vm_user_password", "agent/user-set-password", UserPasswordInput,
    "Set password for an existing VM user (requires guest agent).", "setting VM user password",
)
_agent_tool(
    "run_vm_command", "agent/exec", CommandInput,
    "Run a command in a VM (requires guest agent).", "running VM command",
)


@tool(
    "get_vm_interfaces",
    "Get network interfaces from a VM (requires guest agent).",
    VmInput,
    "getting VM interfaces",
)
async def get_vm_interfaces(client: ProxmoxClient, inp: VmInput) -> Any:
    return await client.get(f"{_guest_path('qemu', inp.node, inp.vmid)}/agent/network-get-interfaces")


# ═══════════════════════════════════════════════════════════════════════════
# ISO images
# ═══════════════════════════════════════════════════════════════════════════


@tool(
    "list_isos",
    "List ISO images on a node, in one storage or across every storage holding ISOs.",
    IsoListInput,
    "listing ISOs",
)
async def list_isos(client: ProxmoxClient, inp: IsoListInput) -> Any:
    if inp.storage:
        storages = [inp.storage]
    else:
        pools = await client.get(f"nodes/{inp.node}/storage") or []
        storages = [
            s["storage"] for s in pools
            if "iso" in str(s.get("content", "")).split(",") and s.get("storage")
        ]
    isos: List[Any] = []
    for storage in storages:
        items = await client.get(f"nodes/{inp.node}/storage/{storage}/content", content="iso") or []
        isos.extend(
            i for i in items
            if i.get("content") == "iso" or str(i.get("volid", "")).endswith(".iso")
        )
    return isos


@tool(
    "download_iso",
    "Download an ISO image from a URL into node storage. Returns the task UPID.",
    DownloadIsoInput,
    "downloading ISO",
)
async def download_iso(client: ProxmoxClient, inp: DownloadIsoInput) -> Any:
    task = await client.post(f"nodes/{inp.node}/storage/{inp.storage}/download-url", **inp.to_params())
    return {"success": True, "taskid": task}


@tool("delete_iso", "Delete an ISO image from node storage.", DeleteIsoInput, "deleting ISO")
async def delete_iso(client: ProxmoxClient, inp: DeleteIsoInput) -> Any:
    volid = quote(inp.volid, safe="")
    await client.delete(f"nodes/{inp.node}/storage/{inp.storage}/content/{volid}")
    return {"success": True, "message": f"ISO {inp.filename} deleted successfully"}


@tool(
    "get_iso_download_status",
    "Get status of an ISO download task (taskid from download_iso).",
    TaskInput,
    "getting ISO download status",
)
async def get_iso_download_status(client: ProxmoxClient, inp: TaskInput) -> Any:
    return await client.get(_task_path(inp.node, inp.taskid))


# ═══════════════════════════════════════════════════════════════════════════
# Firewall
# ═══════════════════════════════════════════════════════════════════════════


def _firewall_tools(kind: str, noun: str) -> None:
    label = "VM" if kind == "qemu" else "container"

    def register(name: str, model: Type[VmInput], description: str, action: str, handler: Handler) -> None:
        handler.__name__ = name
        tool(name, description, model, action)(handler)

    def toggle(enable: bool) -> Handler:
        async def handler(client: ProxmoxClient, inp: VmInput) -> Any:
            await client.put(
                f"{_guest_path(kind, inp.node, inp.vmid)}/firewall/options",
                enable=encode_flag("enable", enable),
            )
            state = "enabled" if enable else "disabled"
            return {"success": True, "message": f"Firewall {state} for {label} {inp.vmid}"}

        return handler

    async def create_rule(client: ProxmoxClient, inp: FirewallRuleInput) -> Any:
        await client.post(f"{_guest_path(kind, inp.node, inp.vmid)}/firewall/rules", **inp.to_params())
        return {"success": True, "message": f"Firewall rule created for {label} {inp.vmid}"}

    async def list_rules(client: ProxmoxClient, inp: VmInput) -> Any:
        return await client.get(f"{_guest_path(kind, inp.node, inp.vmid)}/firewall/rules")

    async def delete_rule(client: ProxmoxClient, inp: FirewallRuleIdInput) -> Any:
        await client.delete(f"{_guest_path(kind, inp.node, inp.vmid)}/firewall/rules/{inp.ruleid}")
        return {"success": True, "message": f"Firewall rule {inp.ruleid} deleted for {label} {inp.vmid}"}

    register(f"enable_{noun}_firewall", VmInput, f"Enable firewall for a {label}.",
             f"enabling {label} firewall", toggle(True))
    register(f"disable_{noun}_firewall", VmInput, f"Disable firewall for a {label}.",
             f"disabling {label} firewall", toggle(False))
    register(f"create_{noun}_firewall_rule", FirewallRuleInput, f"Create a firewall rule for a {label}.",
             f"creating {label} firewall rule", create_rule)
    register(f"list_{noun}_firewall_rules", VmInput, f"List firewall rules for a {label}.",
             f"listing {label} firewall rules", list_rules)
    register(f"delete_{noun}_firewall_rule", FirewallRuleIdInput, f"Delete a firewall rule for a {label}.",
             f"deleting {label} firewall rule", delete_rule)


_firewall_tools("qemu", "vm")
_firewall_tools("lxc", "container")
