"""Trade execution and position management."""
