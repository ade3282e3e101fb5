"""
Unit tests for role validity evaluation and allowed-IP matching.
"""

import pytest
from datetime import datetime, timedelta, timezone

from service_access.app.authz.ip_match import ip_allowed, parse_entry, validate_allowed_ips
from service_access.app.authz.models import DenialReason, RoleRecord
from service_access.app.authz.permissions import Permission, Permissions, RoleKind
from service_access.app.authz.validity import evaluate
from shared.errors import MalformedIPEntryError


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_role(**overrides) -> RoleRecord:
    fields = {
        "user_id": "user-1",
        "role": RoleKind.ADMIN,
        "permissions": Permissions.of([Permission.VIEW_DASHBOARD, Permission.VIEW_USERS]),
    }
    fields.update(overrides)
    return RoleRecord(**fields)


class TestEvaluate:
    """Test cases for evaluate()."""

    def test_active_unrestricted_role_is_authorized(self):
        """Test that a plain active role grants access."""
        decision = evaluate(make_role(), NOW, "198.51.100.7")

        assert decision.allowed is True
        assert decision.reason is None
        assert decision.role == RoleKind.ADMIN
        assert decision.grants(Permission.VIEW_USERS)
        assert not decision.grants(Permission.DELETE_USERS)

    def test_inactive_role_denied(self):
        """Test that an inactive role is denied as inactive."""
        decision = evaluate(make_role(active=False), NOW, None)

        assert decision.allowed is False
        assert decision.reason == DenialReason.INACTIVE

    def test_inactive_wins_over_expired_and_ip(self):
        """Test precedence: inactive is reported even when expired and IP-restricted."""
        role = make_role(
            active=False,
            expires_at=NOW - timedelta(days=1),
            allowed_ips=("10.0.0.0/24",),
        )

        assert evaluate(role, NOW, "192.0.2.1").reason == DenialReason.INACTIVE

    def test_expired_wins_over_ip(self):
        """Test precedence: expired is reported before an IP mismatch."""
        role = make_role(expires_at=NOW - timedelta(seconds=1), allowed_ips=("10.0.0.0/24",))

        assert evaluate(role, NOW, "192.0.2.1").reason == DenialReason.EXPIRED

    def test_expiry_boundary_is_expired(self):
        """Test that now == expires_at counts as expired."""
        role = make_role(expires_at=NOW)

        assert evaluate(role, NOW, None).reason == DenialReason.EXPIRED
        assert evaluate(role, NOW - timedelta(microseconds=1), None).allowed is True

    def test_expired_yesterday(self):
        """Test a role that expired a day ago with no IP restrictions."""
        role = make_role(expires_at=NOW - timedelta(days=1))

        decision = evaluate(role, NOW, "203.0.113.9")
        assert decision.allowed is False
        assert decision.reason == DenialReason.EXPIRED

    def test_naive_expiry_treated_as_utc(self):
        """Test that a naive expiry timestamp compares as UTC."""
        role = make_role(expires_at=datetime(2024, 6, 1, 11, 0))

        assert evaluate(role, NOW, None).reason == DenialReason.EXPIRED

    def test_cidr_allows_member_and_denies_outsider(self):
        """Test a /24 allow list against inside and outside callers."""
        role = make_role(allowed_ips=("10.0.0.0/24",))

        assert evaluate(role, NOW, "10.0.0.5").allowed is True
        denied = evaluate(role, NOW, "10.0.1.5")
        assert denied.allowed is False
        assert denied.reason == DenialReason.IP_RESTRICTED

    def test_missing_caller_ip_denied_when_restricted(self):
        """Test that a restricted role denies a caller without an IP."""
        role = make_role(allowed_ips=("10.0.0.5",))

        assert evaluate(role, NOW, None).reason == DenialReason.IP_RESTRICTED

    def test_malformed_caller_ip_matches_nothing(self):
        """Test that an unparseable caller IP is denied, not an error."""
        role = make_role(allowed_ips=("10.0.0.0/8",))

        assert evaluate(role, NOW, "not-an-ip").reason == DenialReason.IP_RESTRICTED

    def test_super_admin_grants_everything(self):
        """Test that super admins hold every catalog permission."""
        role = make_role(role=RoleKind.SUPER_ADMIN, permissions=Permissions())

        decision = evaluate(role, NOW, None)
        assert all(decision.grants(p) for p in Permission)


class TestIPMatch:
    """Test cases for allowed-IP parsing and matching."""

    def test_exact_address(self):
        """Test single-address entries."""
        assert ip_allowed("192.0.2.10", ["192.0.2.10"])
        assert not ip_allowed("192.0.2.11", ["192.0.2.10"])

    def test_any_entry_matches(self):
        """Test that matching any entry is enough."""
        entries = ["192.0.2.10", "10.0.0.0/24"]

        assert ip_allowed("10.0.0.200", entries)
        assert not ip_allowed("10.0.1.1", entries)

    def test_ipv6_prefix(self):
        """Test IPv6 prefix matching."""
        entries = ["2001:db8::/32"]

        assert ip_allowed("2001:db8:1::5", entries)
        assert not ip_allowed("2001:db9::5", entries)

    def test_no_cross_family_match(self):
        """Test that IPv4 entries never match IPv6 callers and vice versa."""
        assert not ip_allowed("::ffff:10.0.0.5", ["10.0.0.0/24"])
        assert not ip_allowed("10.0.0.5", ["::/0"])

    def test_host_bits_are_masked(self):
        """Test that a prefix with host bits set is accepted and normalized."""
        network = parse_entry("10.0.0.7/24")

        assert str(network) == "10.0.0.0/24"
        assert ip_allowed("10.0.0.1", ["10.0.0.7/24"])

    @pytest.mark.parametrize("entry", ["", "   ", "10.0.0.300", "10.0.0.0/33", "fe80::1%eth0", "example.com"])
    def test_malformed_entries_rejected(self, entry):
        """Test that malformed entries fail validation."""
        with pytest.raises(MalformedIPEntryError) as exc_info:
            validate_allowed_ips([entry])

        assert exc_info.value.code == "MALFORMED_IP_ENTRY"

    def test_validate_strips_and_deduplicates(self):
        """Test normalization of an allow list."""
        assert validate_allowed_ips([" 10.0.0.1 ", "10.0.0.1", "2001:db8::/32"]) == ("10.0.0.1", "2001:db8::/32")
