"""
Tests for RoleAuthorizationMatrix (domain/authorization.py).

Covers:
- The default role table, action by action
- Unknown roles and actions are denied, never raised
- Per-pre-state overrides replace the action-wide role set
- Property: is_authorized agrees with the table for every (action, role)
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from borrowing_kernel.domain.authorization import DEFAULT_PERMISSIONS, RoleAuthorizationMatrix
from borrowing_kernel.domain.roles import ActorRole
from borrowing_kernel.domain.workflow import BorrowingStatus, WorkflowAction
from borrowing_kernel.exceptions import UnauthorizedError

R = ActorRole
A = WorkflowAction

ROLE_NAMES = {r.value for r in ActorRole}


@pytest.fixture
def matrix():
    return RoleAuthorizationMatrix.default()


class TestDefaultTable:

    @pytest.mark.parametrize(
        "action, allowed",
        [
            (A.CREATE, {R.SYSTEM_ADMIN, R.WAREHOUSEMAN, R.SITE_INVENTORY_CLERK}),
            (A.VERIFY, {R.SYSTEM_ADMIN, R.PROJECT_MANAGER}),
            (A.APPROVE, {R.SYSTEM_ADMIN, R.ASSET_DIRECTOR, R.FINANCE_DIRECTOR}),
            (A.RELEASE, {R.SYSTEM_ADMIN, R.WAREHOUSEMAN}),
            (A.RETURN, {R.SYSTEM_ADMIN, R.WAREHOUSEMAN, R.SITE_INVENTORY_CLERK}),
            (A.CANCEL, {R.SYSTEM_ADMIN, R.ASSET_DIRECTOR, R.PROJECT_MANAGER}),
            (A.EXTEND, {R.SYSTEM_ADMIN, R.WAREHOUSEMAN, R.PROJECT_MANAGER, R.ASSET_DIRECTOR}),
        ],
    )
    def test_roles_for_action(self, matrix, action, allowed):
        assert matrix.roles_for(action) == frozenset(allowed)

    def test_procurement_officer_has_no_workflow_rights(self, matrix):
        assert matrix.actions_for(R.PROCUREMENT_OFFICER) == ()

    def test_system_admin_may_do_everything(self, matrix):
        assert set(matrix.actions_for(R.SYSTEM_ADMIN)) == set(WorkflowAction)

    def test_maker_cannot_verify(self, matrix):
        assert not matrix.is_authorized(A.VERIFY, R.SITE_INVENTORY_CLERK)
        assert not matrix.is_authorized(A.VERIFY, R.WAREHOUSEMAN)

    def test_string_inputs_are_accepted(self, matrix):
        assert matrix.is_authorized("approve", "Finance Director")


class TestDenial:

    def test_unknown_role_is_denied(self, matrix):
        assert not matrix.is_authorized(A.APPROVE, "Night Watchman")

    def test_unknown_action_is_denied(self, matrix):
        assert not matrix.is_authorized("demolish", R.SYSTEM_ADMIN)

    def test_require_raises_with_details(self, matrix):
        with pytest.raises(UnauthorizedError) as exc_info:
            matrix.require(A.RELEASE, R.PROJECT_MANAGER)
        assert exc_info.value.action == "release"
        assert exc_info.value.role == "Project Manager"
        assert exc_info.value.code == "UNAUTHORIZED"

    def test_require_passes_for_allowed_role(self, matrix):
        matrix.require(A.RELEASE, R.WAREHOUSEMAN)


class TestStateOverrides:

    def test_override_replaces_action_wide_roles(self):
        matrix = RoleAuthorizationMatrix(
            DEFAULT_PERMISSIONS,
            {(A.CANCEL, BorrowingStatus.APPROVED): {R.SYSTEM_ADMIN}},
        )
        assert not matrix.is_authorized(A.CANCEL, R.ASSET_DIRECTOR, BorrowingStatus.APPROVED)
        assert matrix.is_authorized(A.CANCEL, R.SYSTEM_ADMIN, BorrowingStatus.APPROVED)
        # Other pre-states keep the action-wide set
        assert matrix.is_authorized(A.CANCEL, R.ASSET_DIRECTOR, BorrowingStatus.PENDING_APPROVAL)

    def test_equal_tables_give_equal_matrices(self):
        assert RoleAuthorizationMatrix(DEFAULT_PERMISSIONS) == RoleAuthorizationMatrix.default()
        assert RoleAuthorizationMatrix(
            DEFAULT_PERMISSIONS, {(A.CANCEL, BorrowingStatus.APPROVED): {R.SYSTEM_ADMIN}},
        ) != RoleAuthorizationMatrix.default()

    def test_as_table_is_plain_data(self, matrix):
        table = matrix.as_table()
        assert table["verify"] == ["Project Manager", "System Admin"]


class TestRoleGatingProperty:

    @given(action=st.sampled_from(list(WorkflowAction)), role=st.sampled_from(list(ActorRole)))
    def test_is_authorized_matches_table(self, action, role):
        matrix = RoleAuthorizationMatrix.default()
        assert matrix.is_authorized(action, role) == (role in DEFAULT_PERMISSIONS[action])

    @given(
        action=st.sampled_from(list(WorkflowAction)),
        role=st.text(min_size=1).filter(lambda s: s not in ROLE_NAMES),
    )
    def test_any_unknown_role_is_denied(self, action, role):
        assert not RoleAuthorizationMatrix.default().is_authorized(action, role)
