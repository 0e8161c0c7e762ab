"""Composable server and client filters for RPC services: logging, recovery,
load shedding, circuit breaking, JWT and referer checks, and per-method chains."""

__version__ = "0.1.0"