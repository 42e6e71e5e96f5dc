"""Core infrastructure: configuration, logging, errors, retries and metrics."""
