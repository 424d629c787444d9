"""Remote platform contract, flow control, and the in-memory client."""

__all__ = [
    "client",
    "memory_client",
    "rate_limiter",
]
