"""Cancellation, ordered scheduling, batch coordination and the feature executor."""
