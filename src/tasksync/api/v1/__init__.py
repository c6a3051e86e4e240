"""Route modules, aggregated in router.py."""
