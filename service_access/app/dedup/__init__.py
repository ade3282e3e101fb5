"""
Request deduplication package.

Single-flight collapsing of identical concurrent requests. Records are
strictly transient: once the shared work resolves the next call runs it
again. Temporal reuse across non-overlapping calls is the response cache's
job, not this package's.
"""
