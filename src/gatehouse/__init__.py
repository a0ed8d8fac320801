"""Gatehouse: session quotas, request fingerprinting and resource-load challenges."""

__version__ = "0.1.0"
