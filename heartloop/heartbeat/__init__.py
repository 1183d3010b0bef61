"""Heartbeat scheduler, prompt and response classifier."""
