"""Core sync engine, local store and configuration for tillsync."""
