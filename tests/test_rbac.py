"""Tests for auth/rbac.py allow-lists and the dashboard access check.

Covers:
- every role against every listed resource
- unlisted resources are denied to everyone, admin included
- landing pages per role
- GET /api/v1/dashboard/{resource}: 401 without a session, 403 with role and
  landing on deny, 200 on allow
"""

from __future__ import annotations

import pytest

from auth.rbac import LANDING_PAGES, RESOURCE_ACCESS, ROLES, can_access, landing_for
from conftest import login

EXPECTED = {
    "admin-dashboard": {"admin"},
    "admin-stats": {"admin"},
    "admin-shipments": {"admin"},
    "organizations": {"admin"},
    "franchisee-dashboard": {"admin", "franchisee"},
    "franchisee-assignments": {"admin", "franchisee"},
    "organization-users": {"admin", "franchisee"},
    "staff-dashboard": {"admin", "franchisee", "staff"},
    "user-dashboard": {"admin", "franchisee", "staff", "user", "customer"},
}


class TestAllowLists:
    def test_table_matches_expected(self):
        assert {k: set(v) for k, v in RESOURCE_ACCESS.items()} == EXPECTED

    @pytest.mark.parametrize("resource", sorted(EXPECTED))
    @pytest.mark.parametrize("role", sorted(ROLES))
    def test_can_access(self, role, resource):
        assert can_access(role, resource) is (role in EXPECTED[resource])

    @pytest.mark.parametrize("role", sorted(ROLES))
    def test_unlisted_resource_denied(self, role):
        assert can_access(role, "billing-console") is False

    def test_unknown_role_denied(self):
        assert can_access("superuser", "user-dashboard") is False


class TestLanding:
    def test_each_role_has_a_landing_page(self):
        assert set(LANDING_PAGES) == set(ROLES)

    def test_customer_shares_user_dashboard(self):
        assert landing_for("customer") == landing_for("user") == "/dashboards/user/user-dashboard.html"

    def test_unknown_role_falls_back_to_user(self):
        assert landing_for("mystery") == "/dashboards/user/user-dashboard.html"


class TestDashboardProbe:
    def test_requires_session(self, app_client):
        resp = app_client.get("/api/v1/dashboard/user-dashboard")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_staff_denied_admin_page_with_landing(self, app_client, make_user):
        make_user("sam", role="staff")
        assert login(app_client, "sam").status_code == 200
        resp = app_client.get("/api/v1/dashboard/admin-stats")
        assert resp.status_code == 403
        assert resp.json()["error"] == {
            "code": "forbidden",
            "message": "Forbidden.",
            "role": "staff",
            "landing": "/dashboards/staff/staff-dashboard.html",
        }

    def test_franchisee_allowed_franchise_page(self, app_client, make_user):
        make_user("fran", role="franchisee")
        login(app_client, "fran")
        resp = app_client.get("/api/v1/dashboard/organization-users")
        assert resp.status_code == 200
        assert resp.json()["user"] == {"username": "fran", "role": "franchisee"}

    def test_admin_denied_unlisted_resource(self, app_client, make_user):
        make_user("root", role="admin")
        login(app_client, "root")
        assert app_client.get("/api/v1/dashboard/not-a-page").status_code == 403
