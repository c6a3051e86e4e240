"""Process-level infrastructure: Redis pool, secrets, monitoring."""
