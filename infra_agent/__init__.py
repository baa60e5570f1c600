"""
infra-agent - node agent for edge-proxy hosts.

Keeps the local Caddy configuration in sync with its git source,
reports health to the control plane, ships the system journal and
updates itself in place.
"""

__version__ = "1.4.0"
