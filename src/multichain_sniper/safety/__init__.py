"""Pre-trade safety evaluation."""
