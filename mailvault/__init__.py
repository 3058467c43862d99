#!/usr/bin/env python3

"""
mailvault
Backup of mail server files to OneDrive with reconciliation, safe purge and
mailbox size alerts.
"""

__version__ = "0.1.0"

__all__ = [
    "alerts",
    "config",
    "db",
    "errors",
    "executor",
    "filesystem",
    "locks",
    "logger",
    "models",
    "notifier",
    "oauth",
    "operations",
    "oplog",
    "orchestrator",
    "purge",
    "reconcile",
    "restore",
    "statistics",
    "transport",
    "utils",
]
