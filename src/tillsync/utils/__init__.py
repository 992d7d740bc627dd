"""Shared helpers for tillsync."""
