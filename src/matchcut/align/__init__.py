"""Feature-based alignment engine."""
