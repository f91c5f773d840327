"""apiguard: rate limiting, idempotent execution and duplicate-submission guards."""

__version__ = "0.1.0"
