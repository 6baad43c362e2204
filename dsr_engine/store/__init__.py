"""Persistence layer: store protocols plus SQL and in-memory implementations."""
