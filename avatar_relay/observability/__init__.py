"""Logging helpers and in-process metrics."""
