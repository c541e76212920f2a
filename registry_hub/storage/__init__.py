"""Storage module for the registry hub."""

from .database import Database  # noqa: F401
