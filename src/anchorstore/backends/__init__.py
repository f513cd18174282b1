# src/anchorstore/backends/__init__.py
"""
Storage backend adapters.

Each adapter exposes the same small surface (write / read) and translates its
backend's native failures into BackendError kinds. Adapters never loop over
retries themselves; ordering and backoff live in anchorstore.resolver.
"""
