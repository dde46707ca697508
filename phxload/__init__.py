"""
Load testing harness for Phoenix channel WebSocket endpoints.

This package spawns concurrent virtual users that each hold a channel
connection open, push periodic pings, and record handshake latency, then
summarises the collected trends, counters and checks at the end of the run.
"""

from .main import main

__all__ = ["main"]
