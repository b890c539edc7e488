"""Shared core values for the channel façade."""
from __future__ import annotations

SERVICE_NAME = "rmq_channel"
