"""Durable state: participant sharing policies and the append-only audit log.

This package is intentionally dependency-light at import time. Postgres drivers are
imported lazily inside functions so the broker can run fully in-memory (dev/tests).
"""

from __future__ import annotations
