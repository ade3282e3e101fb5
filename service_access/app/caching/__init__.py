"""
Response caching package.

Short-TTL, in-process cache for idempotent read responses. Prefer explicit
route purges on writes over long TTLs.
"""
