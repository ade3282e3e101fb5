"""
Access Core service package.

This package decides whether callers are authorized and protects the
service under load. It provides:

- app.authz: Role validity evaluation, permission caching and invalidation.
- app.dedup: Single-flight collapsing of identical concurrent requests.
- app.admission: Fair, bounded queuing of rate-limited requests.
- app.caching: Short-TTL cache of idempotent read responses.
- app.pipeline: Composition of the above for a single request.
- app.main: HTTP surface for role administration and diagnostics.

Guidelines:
- Shared structures are only touched through their component interfaces.
- Never hold a lock across an external call.
- Cache failures degrade to a miss, never to a permissive default.
"""
