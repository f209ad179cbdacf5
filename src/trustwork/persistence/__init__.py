"""Persistence — versioned state store, dataclass codec, append-only event log."""
