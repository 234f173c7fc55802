"""HTTP adapter over the analytics service."""
