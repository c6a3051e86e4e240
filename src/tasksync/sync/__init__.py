"""Sync engine: normalization, resolution, execution and polling."""
