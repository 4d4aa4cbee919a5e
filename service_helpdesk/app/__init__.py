"""
Helpdesk Service package for the Helpdesk Access Layer.

The service sits in front of the ticketing read and write paths, providing:
- Cache-aside reads over Redis with TTLs and tag bookkeeping
- Tag, model and event based invalidation for write paths
- Sliding window rate limiting per client IP and route prefix

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.caching: Backend client, cache service, query executor, invalidation.
- app.ratelimit: Sliding window limiter and middleware.
- app.domain: Cached read paths (dashboard statistics).
"""
