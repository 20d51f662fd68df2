"""Realtime fan-out to WebSocket subscribers."""
