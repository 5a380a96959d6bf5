"""Liquidity event detection."""
