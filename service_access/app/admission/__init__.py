"""
Admission package.

Requests rejected by the external rate limiter wait in bounded per-client
FIFO queues and are released round-robin as budget replenishes, instead of
failing outright. Queue residency is bounded by a timeout.
"""
