"""Bilateral reviews and per-user rating aggregates."""
