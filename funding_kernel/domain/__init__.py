"""Pure domain types for the funding kernel (no I/O)."""
