"""Tests for role normalization and actor resolution."""

from uuid import uuid4

import pytest

from budget_kernel.domain.roles import Actor, Role, normalize_role, resolve_actor
from budget_kernel.exceptions import UnknownRoleError


class TestNormalizeRole:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("regional_admin", Role.REGIONAL_ADMIN),
            ("Regional Admin", Role.REGIONAL_ADMIN),
            ("  REGIONAL-ADMIN  ", Role.REGIONAL_ADMIN),
            ("regional", Role.REGIONAL_ADMIN),
            ("finance", Role.FINANCE_OFFICER),
            ("Finance Officer", Role.FINANCE_OFFICER),
            ("SuperAdmin", Role.SUPER_ADMIN),
            ("org-admin", Role.ORGANIZATION_ADMIN),
            ("organization", Role.ORGANIZATION_ADMIN),
        ],
    )
    def test_folds_raw_strings(self, raw, expected):
        assert normalize_role(raw) == expected

    def test_role_passes_through(self):
        assert normalize_role(Role.SUPER_ADMIN) is Role.SUPER_ADMIN

    @pytest.mark.parametrize("raw", ["", "treasurer", "super admin!", None, 3])
    def test_unknown(self, raw):
        with pytest.raises(UnknownRoleError) as exc_info:
            normalize_role(raw)
        assert exc_info.value.code == "UNKNOWN_ROLE"


class TestActor:
    def test_raw_role_coerced(self):
        actor = Actor(actor_id=uuid4(), role="Finance Officer")
        assert actor.role is Role.FINANCE_OFFICER

    def test_unknown_role_refused(self):
        with pytest.raises(UnknownRoleError):
            Actor(actor_id=uuid4(), role="intern")


class TestResolveActor:
    def test_looks_up_directory(self, role_directory):
        user_id = uuid4()
        role_directory.roles[user_id] = "Regional-Admin"

        actor = resolve_actor(role_directory, user_id)

        assert actor.actor_id == user_id
        assert actor.role == Role.REGIONAL_ADMIN

    def test_unmapped_directory_role(self, role_directory):
        user_id = uuid4()
        role_directory.roles[user_id] = "auditor"
        with pytest.raises(UnknownRoleError) as exc_info:
            resolve_actor(role_directory, user_id)
        assert exc_info.value.raw_role == "auditor"
