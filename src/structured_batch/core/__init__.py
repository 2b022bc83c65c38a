"""Shared types, schema descriptors and the error taxonomy."""
