"""
Tests for the user directory
"""

import pytest

from money_market.audit import AuditEventType
from money_market.errors import ConflictError, InvalidInputError, NotAuthorizedError, NotFoundError
from money_market.users import UserRole


class TestUserDirectory:

    def test_create_and_fetch(self, users):
        user = users.create_user("Ada@Fund.Test", "Ada", UserRole.MANAGER, "0.0.101")

        fetched = users.get_user(user.id)
        assert fetched.email == "ada@fund.test"
        assert fetched.role == UserRole.MANAGER
        assert users.get_by_email("ADA@fund.test").id == user.id

    def test_email_is_unique(self, users):
        users.create_user("ada@fund.test", "Ada")

        with pytest.raises(ConflictError):
            users.create_user("ADA@fund.test", "Ada Again")

    def test_invalid_email(self, users):
        with pytest.raises(InvalidInputError):
            users.create_user("not-an-email", "Nobody")

    def test_require_manager(self, users, managers, investor):
        assert users.require_manager(managers[0].id).id == managers[0].id

        with pytest.raises(NotAuthorizedError):
            users.require_manager(investor.id)
        with pytest.raises(NotAuthorizedError):
            users.require_manager("ghost")

    def test_require_user(self, users):
        with pytest.raises(NotFoundError):
            users.require_user("ghost")

    def test_list_by_role(self, users, managers, investor):
        assert len(users.list_users(UserRole.MANAGER)) == 3
        assert [u.id for u in users.list_users(UserRole.INVESTOR)] == [investor.id]

    def test_association_flag_persists(self, users, investor):
        users.mark_token_associated(investor.id)

        assert users.get_user(investor.id).token_associated

    def test_creation_is_audited(self, users, audit):
        user = users.create_user("ada@fund.test", "Ada")

        events = audit.get_events_for_entity("user", user.id)
        assert [e.event_type for e in events] == [AuditEventType.USER_CREATED]
        assert events[0].metadata["role"] == "investor"

    def test_set_ledger_account(self, users):
        user = users.create_user("late@fund.test", "Late")

        users.set_ledger_account(user.id, " 0.0.777 ")

        assert users.get_user(user.id).ledger_account_id == "0.0.777"

    def test_ledger_account_is_not_replaced(self, users, investor):
        with pytest.raises(ConflictError):
            users.set_ledger_account(investor.id, "0.0.777")
        assert users.get_user(investor.id).ledger_account_id == "0.0.500"

    @pytest.mark.parametrize("account", ["", "   "])
    def test_blank_ledger_account(self, users, account):
        user = users.create_user("late@fund.test", "Late")

        with pytest.raises(InvalidInputError):
            users.set_ledger_account(user.id, account)
