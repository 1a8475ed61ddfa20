"""Transactional services for the funding kernel (write side).

Services flush inside the caller's transaction and never commit.
"""
