"""VaultPilot - signal, reconciliation and quota services for vault-managed perpetuals trading."""

__version__ = "1.4.0"
