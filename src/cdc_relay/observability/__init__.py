"""Health probes, HTTP health endpoints and logging setup."""
