"""
Test suite for the investment ledger

Tests token association, buying and redeeming fund tokens, failure handling
on ledger rejections, portfolio valuation and transaction history.
"""

import httpx
import pytest
from decimal import Decimal
from datetime import timedelta

from money_market.audit import AuditEventType
from money_market.config import FundConfig
from money_market.errors import InvalidInputError, NotFoundError, ConflictError, LedgerRejectedError
from money_market.investments import (
    InvestmentLedger, InvestmentStatus, TransactionType, TransactionStatus, PaymentMethod
)
from money_market.ledger_gateway import HttpLedgerGateway
from money_market.users import UserRole

from conftest import INITIAL_MINT, TREASURY, backdate


def _transactions(investment_ledger, owner_id):
    return investment_ledger.list_transactions(owner_id)["transactions"]


class TestAssociation:

    def test_associate_token(self, investment_ledger, investor, token, ledger, users):
        user = investment_ledger.associate_token(investor.id)

        assert user.token_associated
        assert users.get_user(investor.id).token_associated
        assert ledger.query_balance(investor.ledger_account_id).tokens == {token.token_id: 0}

    def test_associate_twice(self, investment_ledger, associated_investor):
        with pytest.raises(ConflictError):
            investment_ledger.associate_token(associated_investor.id)

    def test_associate_without_ledger_account(self, investment_ledger, users, token):
        user = users.create_user("noacct@fund.test", "No Account")

        with pytest.raises(InvalidInputError):
            investment_ledger.associate_token(user.id)

    def test_associate_before_token(self, investment_ledger, investor):
        with pytest.raises(NotFoundError):
            investment_ledger.associate_token(investor.id)


class TestInvest:
    """Test buying fund tokens"""

    def test_invest(self, investment_ledger, associated_investor, token, ledger, audit):
        investment = investment_ledger.invest(associated_investor.id, Decimal('1000'), "mtn_momo", "MOMO-123")

        assert investment.status == InvestmentStatus.ACTIVE
        assert investment.principal_amount == Decimal('1000')
        assert investment.token_amount == 100000
        assert investment.interest_rate_at_open == Decimal('8.5')
        assert investment.ledger_transaction_id

        balances = ledger.query_balance(associated_investor.ledger_account_id).tokens
        assert balances[token.token_id] == 100000
        assert ledger.query_balance(TREASURY).tokens[token.token_id] == INITIAL_MINT - 100000

        [transaction] = _transactions(investment_ledger, associated_investor.id)
        assert transaction.transaction_type == TransactionType.DEPOSIT
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.payment_method == PaymentMethod.MTN_MOMO
        assert transaction.payment_reference == "MOMO-123"
        assert transaction.investment_id == investment.id
        assert transaction.completed_at is not None

        assert audit.get_events_by_type(AuditEventType.INVESTMENT_OPENED)

    def test_token_amount_is_floored(self, investment_ledger, associated_investor):
        investment = investment_ledger.invest(associated_investor.id, Decimal('10.019'), "bank_transfer")

        assert investment.token_amount == 1001

    def test_investment_is_persisted(self, investment_ledger, associated_investor):
        investment = investment_ledger.invest(associated_investor.id, Decimal('250.50'), "airtel_money")
        loaded = investment_ledger.get_investment(investment.id)

        assert loaded.principal_amount == Decimal('250.50')
        assert loaded.investment_date == investment.investment_date

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-10'), "100", None])
    def test_invalid_amount(self, investment_ledger, associated_investor, amount):
        with pytest.raises(InvalidInputError):
            investment_ledger.invest(associated_investor.id, amount, "mtn_momo")

    def test_invalid_payment_method(self, investment_ledger, associated_investor):
        with pytest.raises(InvalidInputError):
            investment_ledger.invest(associated_investor.id, Decimal('100'), "cash")

    def test_requires_association(self, investment_ledger, investor, token):
        with pytest.raises(InvalidInputError):
            investment_ledger.invest(investor.id, Decimal('100'), "mtn_momo")

    def test_requires_token(self, investment_ledger, investor, users):
        users.mark_token_associated(investor.id)

        with pytest.raises(NotFoundError):
            investment_ledger.invest(investor.id, Decimal('100'), "mtn_momo")

    def test_unknown_investor(self, investment_ledger, token):
        with pytest.raises(NotFoundError):
            investment_ledger.invest("ghost", Decimal('100'), "mtn_momo")

    def test_ledger_failure_marks_transaction_failed(self, investment_ledger, associated_investor, ledger, storage):
        ledger.fail_next("transfer", "INSUFFICIENT_TOKEN_BALANCE")

        with pytest.raises(LedgerRejectedError):
            investment_ledger.invest(associated_investor.id, Decimal('100'), "mtn_momo")

        [transaction] = _transactions(investment_ledger, associated_investor.id)
        assert transaction.status == TransactionStatus.FAILED
        assert transaction.metadata["ledger_status"] == "INSUFFICIENT_TOKEN_BALANCE"
        assert transaction.metadata["error_code"] == "LEDGER_REJECTED"
        assert storage.count(investment_ledger.investments_table) == 0

    def test_treasury_cannot_oversell(self, investment_ledger, associated_investor):
        with pytest.raises(LedgerRejectedError) as exc_info:
            investment_ledger.invest(associated_investor.id, Decimal('2000000'), "bank_transfer")

        assert exc_info.value.ledger_status == "INSUFFICIENT_TOKEN_BALANCE"


class TestRedeem:
    """Test redeeming an investment for principal plus interest"""

    def test_redeem_after_ninety_days(self, investment_ledger, associated_investor, storage, ledger, token):
        investment = investment_ledger.invest(associated_investor.id, Decimal('100000'), "bank_transfer")
        backdate(storage, investment_ledger.investments_table, investment.id,
                 "investment_date", timedelta(days=90))

        result = investment_ledger.redeem(associated_investor.id, investment.id, "bank_transfer")

        assert result["days_invested"] == 90
        assert abs(result["total_amount"] - Decimal('102117.76')) <= Decimal('0.01')
        assert result["interest_earned"] == result["total_amount"] - Decimal('100000.00')
        assert result["tokens_redeemed"] == investment.token_amount

        redeemed = investment_ledger.get_investment(investment.id)
        assert redeemed.status == InvestmentStatus.REDEEMED
        assert redeemed.redemption_amount == result["total_amount"]
        assert redeemed.interest_accrued == result["interest_earned"]
        assert redeemed.redemption_transaction_id == result["transaction_id"]

        assert ledger.query_balance(associated_investor.ledger_account_id).tokens[token.token_id] == 0
        assert ledger.query_balance(TREASURY).tokens[token.token_id] == INITIAL_MINT

    def test_withdrawal_transaction_recorded(self, investment_ledger, associated_investor):
        investment = investment_ledger.invest(associated_investor.id, Decimal('500'), "mtn_momo")
        investment_ledger.redeem(associated_investor.id, investment.id)

        withdrawals = investment_ledger.list_transactions(
            associated_investor.id, TransactionType.WITHDRAWAL
        )["transactions"]
        assert len(withdrawals) == 1
        assert withdrawals[0].status == TransactionStatus.COMPLETED
        assert withdrawals[0].payment_method == PaymentMethod.MTN_MOMO
        assert withdrawals[0].investment_id == investment.id

    def test_redeem_twice(self, investment_ledger, associated_investor):
        investment = investment_ledger.invest(associated_investor.id, Decimal('500'), "mtn_momo")
        investment_ledger.redeem(associated_investor.id, investment.id)

        with pytest.raises(NotFoundError):
            investment_ledger.redeem(associated_investor.id, investment.id)

    def test_redeem_someone_elses_investment(self, investment_ledger, associated_investor, users):
        investment = investment_ledger.invest(associated_investor.id, Decimal('500'), "mtn_momo")
        other = users.create_user("other@fund.test", "Other Investor", UserRole.INVESTOR, "0.0.600")

        with pytest.raises(NotFoundError):
            investment_ledger.redeem(other.id, investment.id)

    def test_ledger_failure_keeps_investment_active(self, investment_ledger, associated_investor, ledger):
        investment = investment_ledger.invest(associated_investor.id, Decimal('500'), "mtn_momo")
        ledger.fail_next("transfer", "ACCOUNT_FROZEN_FOR_TOKEN")

        with pytest.raises(LedgerRejectedError):
            investment_ledger.redeem(associated_investor.id, investment.id)

        assert investment_ledger.get_investment(investment.id).status == InvestmentStatus.ACTIVE
        withdrawals = investment_ledger.list_transactions(
            associated_investor.id, "withdrawal"
        )["transactions"]
        assert withdrawals[0].status == TransactionStatus.FAILED
        assert withdrawals[0].metadata["ledger_status"] == "ACCOUNT_FROZEN_FOR_TOKEN"

        # A retry after the failure succeeds
        result = investment_ledger.redeem(associated_investor.id, investment.id)
        assert result["tokens_redeemed"] == investment.token_amount


class TestAccrualModes:
    """Live valuation follows rate changes; snapshot keeps the opening rate"""

    def _redeem_after_rate_change(self, ledger_under_test, investor_id, storage, interest_engine):
        investment = ledger_under_test.invest(investor_id, Decimal('1000'), "mtn_momo")
        backdate(storage, ledger_under_test.investments_table, investment.id,
                 "investment_date", timedelta(days=365))
        interest_engine.update_rate(Decimal('20'))
        return ledger_under_test.redeem(investor_id, investment.id)

    def test_live_mode(self, investment_ledger, associated_investor, storage, interest_engine):
        result = self._redeem_after_rate_change(
            investment_ledger, associated_investor.id, storage, interest_engine
        )
        expected = interest_engine.compute_for_fixed_period(
            Decimal('1000'), result["days_invested"], rate_percent=Decimal('20')
        )
        assert result["interest_earned"] == expected.interest

    def test_snapshot_mode(self, storage, users, tokens, ledger, interest_engine, audit,
                           associated_investor):
        snapshot_ledger = InvestmentLedger(
            storage, users, tokens, ledger, interest_engine, audit,
            FundConfig(use_sqlite=False, accrual_rate_mode="snapshot")
        )
        result = self._redeem_after_rate_change(
            snapshot_ledger, associated_investor.id, storage, interest_engine
        )
        expected = interest_engine.compute_for_fixed_period(
            Decimal('1000'), result["days_invested"], rate_percent=Decimal('8.5')
        )
        assert result["interest_earned"] == expected.interest


class TestPortfolio:

    def test_portfolio(self, investment_ledger, associated_investor, storage, token):
        first = investment_ledger.invest(associated_investor.id, Decimal('1000'), "mtn_momo")
        second = investment_ledger.invest(associated_investor.id, Decimal('2500.50'), "bank_transfer")
        backdate(storage, investment_ledger.investments_table, first.id,
                 "investment_date", timedelta(days=30))

        portfolio = investment_ledger.get_portfolio(associated_investor.id)
        summary = portfolio["summary"]

        assert summary["total_invested"] == Decimal('3500.50')
        assert summary["active_investments"] == 2
        assert summary["token_balance"] == first.token_amount + second.token_amount
        assert summary["current_value"] == summary["total_invested"] + summary["total_interest"]
        assert [i["id"] for i in portfolio["investments"]] == [second.id, first.id]
        assert portfolio["investments"][1]["days_invested"] == 30
        assert portfolio["breakdown"]["principal"] == Decimal('3500.50')

    def test_redeemed_investments_excluded(self, investment_ledger, associated_investor):
        investment = investment_ledger.invest(associated_investor.id, Decimal('1000'), "mtn_momo")
        investment_ledger.redeem(associated_investor.id, investment.id)

        portfolio = investment_ledger.get_portfolio(associated_investor.id)
        assert portfolio["summary"]["active_investments"] == 0
        assert portfolio["summary"]["total_invested"] == Decimal('0.00')

    def test_balance_lookup_failure_is_tolerated(self, investment_ledger, associated_investor, ledger):
        investment_ledger.invest(associated_investor.id, Decimal('1000'), "mtn_momo")
        ledger.fail_next("query_balance", "BUSY")

        portfolio = investment_ledger.get_portfolio(associated_investor.id)
        assert portfolio["summary"]["token_balance"] is None
        assert portfolio["summary"]["active_investments"] == 1


class TestTransactionHistory:

    def test_pagination_and_filtering(self, investment_ledger, associated_investor):
        for amount in ("100", "200", "300"):
            investment_ledger.invest(associated_investor.id, Decimal(amount), "mtn_momo")

        page = investment_ledger.list_transactions(associated_investor.id, page=1, limit=2)
        assert page["pagination"] == {"total": 3, "page": 1, "limit": 2, "pages": 2}
        assert len(page["transactions"]) == 2

        assert investment_ledger.list_transactions(associated_investor.id, "withdrawal")["transactions"] == []

    def test_invalid_type(self, investment_ledger, associated_investor):
        with pytest.raises(InvalidInputError):
            investment_ledger.list_transactions(associated_investor.id, "refund")

    def test_other_investors_not_visible(self, investment_ledger, associated_investor, users):
        investment_ledger.invest(associated_investor.id, Decimal('100'), "mtn_momo")
        other = users.create_user("other@fund.test", "Other Investor")

        assert investment_ledger.list_transactions(other.id)["transactions"] == []


class TestUnexpectedLedgerResponses:
    """Failures that are not ledger rejections still close the transaction"""

    def _http_ledger(self, storage, users, tokens, interest_engine, audit, config, handler):
        gateway = HttpLedgerGateway("https://ledger.test", transport=httpx.MockTransport(handler))
        tokens.create(
            token_id="0.0.7001", name="Fund Token", symbol="FND", decimals=2,
            treasury_account_id=TREASURY, manager_account_ids=["0.0.101", "0.0.102"],
            creation_transaction_id="tx-create"
        )
        return InvestmentLedger(storage, users, tokens, gateway, interest_engine, audit, config)

    @pytest.mark.parametrize("body", [{"status": "SUCCESS"}, ["not", "an", "object"]])
    def test_malformed_success_body(self, storage, users, tokens, interest_engine, audit,
                                    config, investor, body):
        users.mark_token_associated(investor.id)
        investment_ledger = self._http_ledger(
            storage, users, tokens, interest_engine, audit, config,
            lambda request: httpx.Response(200, json=body)
        )

        with pytest.raises(LedgerRejectedError) as exc_info:
            investment_ledger.invest(investor.id, Decimal('100'), PaymentMethod.MTN_MOMO)
        assert exc_info.value.ledger_status == "MALFORMED_RESPONSE"

        [tx] = _transactions(investment_ledger, investor.id)
        assert tx.status == TransactionStatus.FAILED
        assert tx.metadata["ledger_status"] == "MALFORMED_RESPONSE"

    def test_unexpected_error_during_invest(self, investment_ledger, associated_investor,
                                            ledger, monkeypatch):
        def broken_transfer(*args, **kwargs):
            raise RuntimeError("socket closed")

        monkeypatch.setattr(ledger, "transfer", broken_transfer)

        with pytest.raises(RuntimeError):
            investment_ledger.invest(associated_investor.id, Decimal('100'), PaymentMethod.MTN_MOMO)

        [tx] = _transactions(investment_ledger, associated_investor.id)
        assert tx.status == TransactionStatus.FAILED
        assert tx.metadata == {"error": "socket closed", "error_code": "EXECUTION_FAILED"}

    def test_unexpected_error_during_redeem(self, investment_ledger, associated_investor,
                                            ledger, monkeypatch):
        investment = investment_ledger.invest(associated_investor.id, Decimal('100'),
                                              PaymentMethod.MTN_MOMO)

        def broken_transfer(*args, **kwargs):
            raise RuntimeError("socket closed")

        monkeypatch.setattr(ledger, "transfer", broken_transfer)

        with pytest.raises(RuntimeError):
            investment_ledger.redeem(associated_investor.id, investment.id)

        withdrawal = investment_ledger.list_transactions(
            associated_investor.id, TransactionType.WITHDRAWAL)["transactions"][0]
        assert withdrawal.status == TransactionStatus.FAILED
        assert investment_ledger.get_investment(investment.id).status == InvestmentStatus.ACTIVE
