"""
Resilient request gate service package.

The gate wraps request handling with:
- Caching: distributed store first, bounded local store as fallback
- Rate limiting: fixed-window budgets per client under named policies
- Lockout: per-account freeze after repeated failed logins
- Circuit-breaking around the distributed store

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.context: Construction of every component from configuration.
- app.gate: Composition of cache, throttle and lockout around a handler.
- app.storage: Redis and in-memory storage backends.
- app.caching: Key codec, tiered store and response cache.
- app.ratelimit: Fixed-window throttle.
- app.lockout: Failed-login lockout tracker.
"""
