"""Shared utilities for the funding kernel."""
