"""Risk limits."""
