"""Storage backends for the session cache.

Stores handle:
- Redis: shared cache with TTL, prefix purge
- Memory: single-process cache (tests, local runs)

No metric logic in stores - that belongs in services.
"""
