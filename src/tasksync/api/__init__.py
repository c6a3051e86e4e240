"""HTTP surface: webhooks, cron-triggered sync routes and diagnostics."""
