"""Registry hub - company data aggregated from the French business registries.

Fans a company search out to the national register, the legal
announcements bulletin, the companies registry and a local store, merges
the answers and reports per-source diagnostics.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
