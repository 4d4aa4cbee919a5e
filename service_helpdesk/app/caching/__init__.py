"""
Helpdesk caching package.

Cache-aside reads over Redis with explicit tag invalidation. Entries are
disposable copies of system-of-record data; a backend outage only costs
latency, never correctness.
"""
