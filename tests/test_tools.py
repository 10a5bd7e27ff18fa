"""
Tests for the tool dispatch layer: argument validation, request mapping and
error formatting. HTTP calls are mocked with respx.
"""
from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest
import respx

from pve_mcp.config import Settings
from pve_mcp.server import list_tool_definitions, run_tool
from pve_mcp.tools import TOOLS

BASE = "https://pve.test:8006/api2/json/"

SETTINGS = Settings(
    host="pve.test",
    user="root@pam",
    password="secret",
    verify_ssl=False,
    timeout=5.0,
)

_TICKET = httpx.Response(
    200, json={"data": {"ticket": "PVE:root@pam:T1", "CSRFPreventionToken": "csrf-1"}}
)


def _ok(data: object) -> httpx.Response:
    return httpx.Response(200, json={"data": data})


def _text(result) -> str:
    return result.content[0].text


def _payload(result) -> object:
    assert not result.isError, _text(result)
    return json.loads(_text(result))


def _form(route) -> dict:
    return parse_qs(route.calls.last.request.content.decode())


@pytest.fixture
def ticket():
    with respx.mock(base_url=BASE, assert_all_called=False) as mock:
        mock.post("access/ticket", name="ticket").mock(return_value=_TICKET)
        yield mock


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_registry_covers_every_tool():
    expected = {
        "health_check", "get_node_status", "get_storage_status", "get_cluster_status",
        "get_vm_status", "get_container_status", "get_running_vms", "list_tasks",
        "create_vm", "create_container", "delete_vm", "delete_container",
        "start_vm", "stop_vm", "shutdown_vm", "restart_vm",
        "start_container", "stop_container", "shutdown_container", "restart_container",
        "vm_console", "get_proxmox_version", "get_updates", "upgrade_proxmox",
        "get_task_status", "ssh_to_vm", "set_vm_ip", "set_vm_hostname", "create_vm_user",
        "set_vm_user_password", "run_vm_command", "get_vm_interfaces",
        "list_isos", "download_iso", "delete_iso", "get_iso_download_status",
        "enable_vm_firewall", "disable_vm_firewall",
        "enable_container_firewall", "disable_container_firewall",
        "create_vm_firewall_rule", "create_container_firewall_rule",
        "list_vm_firewall_rules", "list_container_firewall_rules",
        "delete_vm_firewall_rule", "delete_container_firewall_rule",
    }
    assert set(TOOLS) == expected


def test_tool_definitions_expose_object_schemas():
    tools = {t.name: t for t in list_tool_definitions()}
    assert all(t.inputSchema["type"] == "object" for t in tools.values())
    create_vm = tools["create_vm"].inputSchema
    assert set(create_vm["required"]) == {"node", "vmid", "memory"}
    assert "installGuestAgent" in create_vm["properties"]
    assert tools["get_cluster_status"].inputSchema["properties"] == {}


# ---------------------------------------------------------------------------
# Error formatting
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unknown_tool():
    result = await run_tool("format_disk", {}, SETTINGS)
    assert result.isError
    assert _text(result) == "Unknown tool: 'format_disk'"


@pytest.mark.asyncio
async def test_invalid_arguments_never_reach_the_api(ticket):
    result = await run_tool("start_vm", {"node": "pve; reboot", "vmid": 100}, SETTINGS)
    assert result.isError
    assert _text(result).startswith("Error starting VM: invalid arguments: node:")
    assert not ticket["ticket"].called


@pytest.mark.asyncio
async def test_api_error_is_formatted(ticket):
    ticket.post("nodes/pve/qemu/100/status/start").mock(
        return_value=httpx.Response(500, json={"errors": ["VM 100 is locked (backup)"]})
    )
    result = await run_tool("start_vm", {"node": "pve", "vmid": 100}, SETTINGS)
    assert result.isError
    assert _text(result) == "Error starting VM: VM 100 is locked (backup)"


@pytest.mark.asyncio
async def test_auth_error_is_formatted():
    with respx.mock(base_url=BASE) as mock:
        mock.post("access/ticket").mock(return_value=httpx.Response(401, json={"data": None}))
        result = await run_tool("get_cluster_status", {}, SETTINGS)
    assert result.isError
    assert _text(result) == (
        "Error getting cluster status: Authentication failed: no ticket returned (status 401)"
    )


@pytest.mark.asyncio
async def test_transport_error_is_formatted():
    with respx.mock(base_url=BASE) as mock:
        mock.post("access/ticket").mock(side_effect=httpx.ConnectError("connection refused"))
        result = await run_tool("get_proxmox_version", {}, SETTINGS)
    assert result.isError
    assert _text(result) == "Error getting Proxmox version: connection refused"


# ---------------------------------------------------------------------------
# Status tools
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health_check(ticket):
    ticket.get("version").mock(return_value=_ok({"version": "8.2.4", "release": "8.2"}))
    data = _payload(await run_tool("health_check", None, SETTINGS))
    assert data == {"status": "ok", "proxmox": {"version": "8.2.4", "release": "8.2"}}


@pytest.mark.asyncio
async def test_get_node_status_single_and_all(ticket):
    ticket.get("nodes/pve/status").mock(return_value=_ok({"uptime": 10}))
    ticket.get("nodes").mock(return_value=_ok([{"node": "pve"}, {"node": "pve2"}]))
    assert _payload(await run_tool("get_node_status", {"node": "pve"}, SETTINGS)) == {"uptime": 10}
    assert len(_payload(await run_tool("get_node_status", {}, SETTINGS))) == 2


@pytest.mark.asyncio
async def test_get_storage_status_routes(ticket):
    both = ticket.get("nodes/pve/storage/local/status").mock(return_value=_ok({"active": 1}))
    cluster = ticket.get("storage").mock(return_value=_ok([{"storage": "local"}]))
    await run_tool("get_storage_status", {"node": "pve", "storage": "local"}, SETTINGS)
    await run_tool("get_storage_status", {}, SETTINGS)
    assert both.called and cluster.called


@pytest.mark.asyncio
async def test_get_vm_status_single(ticket):
    ticket.get("nodes/pve/qemu/100/status/current").mock(
        return_value=_ok({"vmid": 100, "status": "running"})
    )
    data = _payload(await run_tool("get_vm_status", {"node": "pve", "vmid": 100}, SETTINGS))
    assert data["status"] == "running"


@pytest.mark.asyncio
async def test_get_vm_status_searches_cluster_without_node(ticket):
    route = ticket.get("cluster/resources").mock(
        return_value=_ok([
            {"type": "qemu", "vmid": 100, "node": "pve"},
            {"type": "lxc", "vmid": 101, "node": "pve"},
            {"type": "qemu", "vmid": 102, "node": "pve2"},
        ])
    )
    one = _payload(await run_tool("get_vm_status", {"vmid": 102}, SETTINGS))
    assert one["node"] == "pve2"
    every = _payload(await run_tool("get_container_status", {}, SETTINGS))
    assert [c["vmid"] for c in every] == [101]
    assert route.calls.last.request.url.params["type"] == "vm"


@pytest.mark.asyncio
async def test_get_running_vms(ticket):
    ticket.get("nodes/pve/qemu").mock(
        return_value=_ok([{"vmid": 100, "status": "running"}, {"vmid": 101, "status": "stopped"}])
    )
    ticket.get("nodes/pve/lxc").mock(return_value=_ok([{"vmid": 200, "status": "running"}]))
    data = _payload(await run_tool("get_running_vms", {"node": "pve"}, SETTINGS))
    assert data["total_running"] == 2
    assert [v["vmid"] for v in data["running_vms"]] == [100]


@pytest.mark.asyncio
async def test_list_tasks_respects_limit(ticket):
    ticket.get("cluster/tasks").mock(
        return_value=_ok([{"upid": f"UPID:{i}", "status": "OK"} for i in range(10)])
    )
    data = _payload(await run_tool("list_tasks", {"limit": 3}, SETTINGS))
    assert [t["upid"] for t in data] == ["UPID:0", "UPID:1", "UPID:2"]


# ---------------------------------------------------------------------------
# Lifecycle tools
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_vm_posts_params(ticket):
    route = ticket.post("nodes/pve/qemu").mock(return_value=_ok("UPID:pve:1:qmcreate"))
    data = _payload(
        await run_tool(
            "create_vm",
            {"node": "pve", "vmid": 120, "memory": 2048, "name": "web01", "onboot": True},
            SETTINGS,
        )
    )
    assert data == {"success": True, "vmid": 120, "task": "UPID:pve:1:qmcreate"}
    form = _form(route)
    assert form["vmid"] == ["120"]
    assert form["onboot"] == ["1"]
    assert form["agent"] == ["1"]


@pytest.mark.asyncio
async def test_create_container_duplicate_vmid(ticket):
    ticket.post("nodes/pve/lxc").mock(
        return_value=httpx.Response(400, json={"data": None, "errors": {"vmid": "already exists"}})
    )
    result = await run_tool(
        "create_container",
        {"node": "pve", "vmid": 200, "hostname": "ct", "ostemplate": "local:vztmpl/x.tar.zst", "memory": 512},
        SETTINGS,
    )
    assert result.isError
    assert _text(result) == "Error creating container: vmid: already exists"


@pytest.mark.asyncio
async def test_delete_vm_force_in_query(ticket):
    route = ticket.delete("nodes/pve/qemu/100").mock(return_value=_ok("UPID:pve:1:qmdestroy"))
    data = _payload(await run_tool("delete_vm", {"node": "pve", "vmid": 100, "force": True}, SETTINGS))
    assert data["message"] == "VM 100 deleted successfully"
    assert route.calls.last.request.url.params["force"] == "1"


@pytest.mark.asyncio
async def test_shutdown_container_with_timeout(ticket):
    route = ticket.post("nodes/pve/lxc/200/status/shutdown").mock(return_value=_ok("UPID:x"))
    data = _payload(
        await run_tool("shutdown_container", {"node": "pve", "vmid": 200, "timeout": 45}, SETTINGS)
    )
    assert data["message"] == "Container 200 shutdown initiated"
    assert _form(route) == {"timeout": ["45"]}


@pytest.mark.asyncio
async def test_restart_vm_uses_reboot(ticket):
    route = ticket.post("nodes/pve/qemu/100/status/reboot").mock(return_value=_ok("UPID:x"))
    data = _payload(await run_tool("restart_vm", {"node": "pve", "vmid": 100}, SETTINGS))
    assert data == {"success": True, "message": "VM 100 restarted", "task": "UPID:x"}
    assert route.calls.last.request.content == b""


@pytest.mark.asyncio
async def test_vm_console_default_type(ticket):
    route = ticket.post("nodes/pve/qemu/100/console").mock(return_value=_ok({"port": 5900}))
    assert _payload(await run_tool("vm_console", {"node": "pve", "vmid": 100}, SETTINGS)) == {"port": 5900}
    assert _form(route) == {"type": ["websocket"]}


# ---------------------------------------------------------------------------
# Maintenance tools
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_get_updates_for_every_node(ticket):
    ticket.get("nodes").mock(return_value=_ok([{"node": "pve"}, {"node": "pve2"}]))
    ticket.get("nodes/pve/apt/update").mock(return_value=_ok([{"Package": "pve-manager"}]))
    ticket.get("nodes/pve2/apt/update").mock(return_value=_ok([]))
    data = _payload(await run_tool("get_updates", {}, SETTINGS))
    assert data == {"pve": [{"Package": "pve-manager"}], "pve2": []}


@pytest.mark.asyncio
async def test_upgrade_proxmox(ticket):
    route = ticket.post("nodes/pve/apt/upgrade").mock(return_value=_ok("UPID:pve:1:aptupgrade"))
    data = _payload(await run_tool("upgrade_proxmox", {"node": "pve", "dist_upgrade": True}, SETTINGS))
    assert data == {"success": True, "taskid": "UPID:pve:1:aptupgrade"}
    assert _form(route) == {"dist_upgrade": ["1"]}


@pytest.mark.asyncio
async def test_get_task_status_quotes_upid(ticket):
    route = ticket.route(method="GET", host="pve.test", path__startswith="/api2/json/nodes/pve/tasks/").mock(
        return_value=_ok({"status": "stopped", "exitstatus": "OK"})
    )
    upid = "UPID:pve:0001:qmstart:100:root@pam:"
    data = _payload(await run_tool("get_task_status", {"node": "pve", "taskid": upid}, SETTINGS))
    assert data["exitstatus"] == "OK"
    raw_path = route.calls.last.request.url.raw_path
    assert raw_path.endswith(b"/tasks/UPID%3Apve%3A0001%3Aqmstart%3A100%3Aroot%40pam%3A/status")


# ---------------------------------------------------------------------------
# Guest agent tools
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_run_vm_command(ticket):
    route = ticket.post("nodes/pve/qemu/100/agent/exec").mock(return_value=_ok({"pid": 42}))
    data = _payload(
        await run_tool("run_vm_command", {"node": "pve", "vmid": 100, "command": "uptime"}, SETTINGS)
    )
    assert data == {"pid": 42}
    assert _form(route) == {"command": ["uptime"]}


@pytest.mark.asyncio
async def test_ssh_to_vm_defaults_to_shell(ticket):
    route = ticket.post("nodes/pve/qemu/100/ssh").mock(return_value=_ok(None))
    await run_tool("ssh_to_vm", {"node": "pve", "vmid": 100, "username": "admin"}, SETTINGS)
    assert _form(route) == {"username": ["admin"], "command": ["/bin/bash"]}


@pytest.mark.asyncio
async def test_get_vm_interfaces(ticket):
    ticket.get("nodes/pve/qemu/100/agent/network-get-interfaces").mock(
        return_value=_ok({"result": [{"name": "eth0"}]})
    )
    data = _payload(await run_tool("get_vm_interfaces", {"node": "pve", "vmid": 100}, SETTINGS))
    assert data["result"][0]["name"] == "eth0"


# ---------------------------------------------------------------------------
# ISO tools
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_isos_across_iso_storages(ticket):
    ticket.get("nodes/pve/storage").mock(
        return_value=_ok([
            {"storage": "local", "content": "iso,vztmpl,backup"},
            {"storage": "local-lvm", "content": "images,rootdir"},
        ])
    )
    content = ticket.get("nodes/pve/storage/local/content").mock(
        return_value=_ok([
            {"volid": "local:iso/debian-12.iso", "content": "iso", "size": 1},
        ])
    )
    data = _payload(await run_tool("list_isos", {"node": "pve"}, SETTINGS))
    assert [i["volid"] for i in data] == ["local:iso/debian-12.iso"]
    assert content.call_count == 1
    assert content.calls.last.request.url.params["content"] == "iso"


@pytest.mark.asyncio
async def test_download_iso(ticket):
    route = ticket.post("nodes/pve/storage/local/download-url").mock(return_value=_ok("UPID:dl"))
    data = _payload(
        await run_tool(
            "download_iso",
            {"node": "pve", "storage": "local", "filename": "a.iso", "url": "https://example.com/a.iso"},
            SETTINGS,
        )
    )
    assert data == {"success": True, "taskid": "UPID:dl"}
    assert _form(route)["content"] == ["iso"]


@pytest.mark.asyncio
async def test_delete_iso_encodes_volid(ticket):
    route = ticket.route(
        method="DELETE", host="pve.test", path__startswith="/api2/json/nodes/pve/storage/local/content/"
    ).mock(return_value=_ok(None))
    data = _payload(
        await run_tool("delete_iso", {"node": "pve", "storage": "local", "filename": "a.iso"}, SETTINGS)
    )
    assert data["message"] == "ISO a.iso deleted successfully"
    assert route.calls.last.request.url.raw_path.endswith(b"/content/local%3Aiso%2Fa.iso")


# ---------------------------------------------------------------------------
# Firewall tools
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_enable_and_disable_container_firewall(ticket):
    route = ticket.put("nodes/pve/lxc/200/firewall/options").mock(return_value=_ok(None))
    on = _payload(await run_tool("enable_container_firewall", {"node": "pve", "vmid": 200}, SETTINGS))
    assert on["message"] == "Firewall enabled for container 200"
    assert _form(route) == {"enable": ["1"]}
    await run_tool("disable_container_firewall", {"node": "pve", "vmid": 200}, SETTINGS)
    assert _form(route) == {"enable": ["0"]}


@pytest.mark.asyncio
async def test_create_vm_firewall_rule(ticket):
    route = ticket.post("nodes/pve/qemu/100/firewall/rules").mock(return_value=_ok(None))
    data = _payload(
        await run_tool(
            "create_vm_firewall_rule", {"node": "pve", "vmid": 100, "rule": "in,REJECT,22/tcp"}, SETTINGS
        )
    )
    assert data["message"] == "Firewall rule created for VM 100"
    assert _form(route) == {
        "type": ["in"], "action": ["REJECT"], "dport": ["22"], "proto": ["tcp"], "enable": ["1"],
    }


@pytest.mark.asyncio
async def test_delete_container_firewall_rule(ticket):
    ticket.delete("nodes/pve/lxc/200/firewall/rules/2").mock(return_value=_ok(None))
    data = _payload(
        await run_tool(
            "delete_container_firewall_rule", {"node": "pve", "vmid": 200, "ruleid": "2"}, SETTINGS
        )
    )
    assert data["message"] == "Firewall rule 2 deleted for container 200"
