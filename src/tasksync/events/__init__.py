"""Webhook log persistence and in-process fan-out to streaming clients."""
