"""
Rate limiting package for the Helpdesk service.

Holds the sliding window limiter and the middleware that enforces
per-client, per-route request budgets before handlers run.
"""
