"""CLI module for fieldbot."""
