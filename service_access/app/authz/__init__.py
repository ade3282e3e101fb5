"""
Authorization package.

Decides whether a caller's role currently grants access and caches those
decisions so that most requests avoid a role store lookup.

Modules of interest:
- permissions: Closed permission catalog and role-tier constraints.
- models: Role records, decisions and API request/response models.
- ip_match: Allowed-IP validation and CIDR matching.
- validity: Pure role validity evaluation with fixed check precedence.
- permission_cache: TTL and capacity bounded decision cache.
- invalidation: Hook run by role mutations before they report success.
- role_store: Role store protocol and in-memory implementation.
- service: Cache-aside authorization resolver.
"""
