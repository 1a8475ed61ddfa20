"""Database infrastructure for the funding kernel."""
