"""Core migration logic: progress, forwarding, realtime sync and orchestration."""

__all__ = [
    "config",
    "forwarder",
    "orchestrator",
    "progress",
    "realtime_sync",
    "report",
    "shutdown",
    "state",
]
