"""Proxmox VE MCP server using ticket-based session authentication."""

__version__ = "0.1.0"
