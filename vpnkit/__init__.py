"""Port descriptions, configuration files, transports, an HTTP control client and server, and vmnet and vmnetd wire protocols for a VPNKit networking service."""

__version__ = "0.1.0"

__all__ = ["client", "config", "frames", "port", "server", "transport", "vmnet", "vmnetd"]