"""HTTP API for the registry hub."""
