"""
Shared fixtures: every component over in-memory storage and a simulated ledger
"""

import pytest
from decimal import Decimal
from datetime import datetime, timedelta

from money_market.audit import AuditTrail
from money_market.config import FundConfig
from money_market.interest import InterestEngine
from money_market.investments import InvestmentLedger
from money_market.ledger_gateway import InMemoryLedgerGateway
from money_market.multisig import MultiSigWorkflow, RequestType
from money_market.storage import InMemoryStorage
from money_market.tokens import TokenRegistry
from money_market.users import UserDirectory, UserRole


TREASURY = "0.0.treasury"
INITIAL_MINT = 100_000_000  # 1,000,000.00 at 2 decimals


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit(storage):
    return AuditTrail(storage)


@pytest.fixture
def config():
    return FundConfig(use_sqlite=False, treasury_account_id=TREASURY)


@pytest.fixture
def interest_engine(storage, audit):
    return InterestEngine(Decimal('8.5'), storage, audit)


@pytest.fixture
def ledger():
    return InMemoryLedgerGateway(TREASURY)


@pytest.fixture
def users(storage, audit):
    return UserDirectory(storage, audit)


@pytest.fixture
def tokens(storage):
    return TokenRegistry(storage)


@pytest.fixture
def workflow(storage, users, tokens, ledger, interest_engine, audit, config):
    return MultiSigWorkflow(storage, users, tokens, ledger, interest_engine, audit, config)


@pytest.fixture
def investment_ledger(storage, users, tokens, ledger, interest_engine, audit, config):
    return InvestmentLedger(storage, users, tokens, ledger, interest_engine, audit, config)


@pytest.fixture
def managers(users):
    """Three managers, each with a ledger signing account"""
    return [
        users.create_user(f"manager{i}@fund.test", f"Manager {i}", UserRole.MANAGER, f"0.0.10{i}")
        for i in (1, 2, 3)
    ]


@pytest.fixture
def investor(users):
    return users.create_user("investor@fund.test", "Ivy Investor", UserRole.INVESTOR, "0.0.500")


@pytest.fixture
def token(workflow, tokens, managers):
    """Fund token created and minted by managers 1 and 2"""
    first, second = managers[0], managers[1]
    request = workflow.initiate(RequestType.TOKEN_CREATION, {}, first.id)
    workflow.approve(request.id, second.id)

    mint = workflow.initiate(RequestType.TOKEN_MINT, {"amount": INITIAL_MINT}, first.id)
    workflow.approve(mint.id, second.id)
    return tokens.get()


@pytest.fixture
def associated_investor(investment_ledger, investor, token):
    return investment_ledger.associate_token(investor.id)


def backdate(storage, table, record_id, field, delta: timedelta):
    """Shift a stored timestamp into the past"""
    data = storage.load(table, record_id)
    data[field] = (datetime.fromisoformat(data[field]) - delta).isoformat()
    storage.save(table, record_id, data)
