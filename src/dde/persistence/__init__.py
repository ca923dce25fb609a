"""Durable storage for analysis sessions, checkpoints and cached results."""
