"""
Role validity evaluation.
"""

from datetime import datetime
from typing import Optional

from .ip_match import ip_allowed
from .models import AuthorizationDecision, DenialReason, RoleRecord, as_utc


def evaluate(role: RoleRecord, now: datetime, caller_ip: Optional[str]) -> AuthorizationDecision:
    """Decide whether ``role`` grants access at ``now`` from ``caller_ip``.

    Checks run in a fixed order and the first failing one wins:

    1. inactive role -> ``Denied(inactive)``
    2. ``expires_at`` reached (``now >= expires_at``) -> ``Denied(expired)``
    3. non-empty ``allowed_ips`` not matching the caller -> ``Denied(ip_restricted)``
    4. otherwise ``Authorized`` with the role's permissions

    The function is pure; it is safe to call on every request when the
    permission cache is unavailable.
    """
    if not role.active:
        return AuthorizationDecision.denied(DenialReason.INACTIVE, role)

    if role.expires_at is not None and as_utc(now) >= as_utc(role.expires_at):
        return AuthorizationDecision.denied(DenialReason.EXPIRED, role)

    if role.allowed_ips and not ip_allowed(caller_ip, role.allowed_ips):
        return AuthorizationDecision.denied(DenialReason.IP_RESTRICTED, role)

    return AuthorizationDecision.authorized(role)
