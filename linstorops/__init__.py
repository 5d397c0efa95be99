"""Reconciliation logic for LINSTOR node connections, satellites, storage pools and retry rate limiting."""

__version__ = "2.8.1"