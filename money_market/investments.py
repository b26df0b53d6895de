"""
Investment Ledger Module

Investor-facing operations: token association, buying fund tokens with a
fiat deposit, redeeming an investment for principal plus accrued interest,
and portfolio and transaction history views.

Every money movement is recorded as a Transaction that starts pending and
ends completed or failed; a failed ledger call leaves the failure details on
the transaction and the investment untouched.
"""

from decimal import Decimal, ROUND_FLOOR
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import math
import uuid

from .audit import AuditTrail, AuditEventType
from .config import FundConfig
from .errors import MoneyMarketError, InvalidInputError, NotFoundError, ConflictError, LedgerRejectedError
from .interest import InterestEngine, PortfolioEntry, to_decimal, round_money
from .ledger_gateway import LedgerGateway
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, KeyedLocks, parse_datetime, format_datetime
from .tokens import TokenRegistry
from .users import User, UserDirectory


MAX_PAGE_SIZE = 100


class InvestmentStatus(Enum):
    ACTIVE = "active"
    REDEEMED = "redeemed"
    PENDING = "pending"


class TransactionType(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INTEREST_PAYMENT = "interest_payment"
    FEE = "fee"


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethod(Enum):
    """Off-chain rails the fiat leg travels on"""
    MTN_MOMO = "mtn_momo"
    AIRTEL_MONEY = "airtel_money"
    BANK_TRANSFER = "bank_transfer"


class AccrualRateMode(Enum):
    LIVE = "live"          # every open investment follows the current fund rate
    SNAPSHOT = "snapshot"  # each investment keeps the rate it was opened at


@dataclass
class Investment(StorageRecord):
    owner_id: str
    principal_amount: Decimal
    token_amount: int
    investment_date: datetime
    interest_rate_at_open: Decimal
    status: InvestmentStatus = InvestmentStatus.ACTIVE
    redemption_date: Optional[datetime] = None
    redemption_amount: Optional[Decimal] = None
    interest_accrued: Decimal = Decimal('0')
    ledger_transaction_id: Optional[str] = None
    redemption_transaction_id: Optional[str] = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == InvestmentStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "owner_id": self.owner_id,
            "principal_amount": str(self.principal_amount),
            "token_amount": self.token_amount,
            "investment_date": self.investment_date.isoformat(),
            "interest_rate_at_open": str(self.interest_rate_at_open),
            "status": self.status.value,
            "redemption_date": format_datetime(self.redemption_date),
            "redemption_amount": str(self.redemption_amount) if self.redemption_amount is not None else None,
            "interest_accrued": str(self.interest_accrued),
            "ledger_transaction_id": self.ledger_transaction_id,
            "redemption_transaction_id": self.redemption_transaction_id,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Investment':
        redemption_amount = data.get('redemption_amount')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            owner_id=data['owner_id'],
            principal_amount=Decimal(data['principal_amount']),
            token_amount=data['token_amount'],
            investment_date=parse_datetime(data['investment_date']),
            interest_rate_at_open=Decimal(data['interest_rate_at_open']),
            status=InvestmentStatus(data['status']),
            redemption_date=parse_datetime(data.get('redemption_date')),
            redemption_amount=Decimal(redemption_amount) if redemption_amount is not None else None,
            interest_accrued=Decimal(data.get('interest_accrued', '0')),
            ledger_transaction_id=data.get('ledger_transaction_id'),
            redemption_transaction_id=data.get('redemption_transaction_id'),
            version=data.get('version', 0),
        )


@dataclass
class Transaction(StorageRecord):
    """Audit record of one fiat/token movement"""
    owner_id: str
    transaction_type: TransactionType
    amount_fiat: Decimal
    token_amount: int
    payment_method: PaymentMethod
    description: str
    payment_reference: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    investment_id: Optional[str] = None
    ledger_transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "owner_id": self.owner_id,
            "transaction_type": self.transaction_type.value,
            "amount_fiat": str(self.amount_fiat),
            "token_amount": self.token_amount,
            "payment_method": self.payment_method.value,
            "description": self.description,
            "payment_reference": self.payment_reference,
            "status": self.status.value,
            "investment_id": self.investment_id,
            "ledger_transaction_id": self.ledger_transaction_id,
            "metadata": dict(self.metadata),
            "completed_at": format_datetime(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            owner_id=data['owner_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount_fiat=Decimal(data['amount_fiat']),
            token_amount=data['token_amount'],
            payment_method=PaymentMethod(data['payment_method']),
            description=data.get('description', ''),
            payment_reference=data.get('payment_reference'),
            status=TransactionStatus(data['status']),
            investment_id=data.get('investment_id'),
            ledger_transaction_id=data.get('ledger_transaction_id'),
            metadata=data.get('metadata') or {},
            completed_at=parse_datetime(data.get('completed_at')),
        )


def _parse_payment_method(value: Any) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(value)
    except ValueError:
        raise InvalidInputError(
            f"Invalid payment method: {value}",
            {"allowed": [m.value for m in PaymentMethod]}
        )


class InvestmentLedger:
    """Buys, redemptions and investor views over the fund token"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserDirectory,
        tokens: TokenRegistry,
        ledger: LedgerGateway,
        interest_engine: InterestEngine,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[FundConfig] = None
    ):
        self.storage = storage
        self.users = users
        self.tokens = tokens
        self.ledger = ledger
        self.interest_engine = interest_engine
        self.audit_trail = audit_trail
        self.config = config or FundConfig()
        self.rate_mode = AccrualRateMode(self.config.accrual_rate_mode)
        self.investments_table = "investments"
        self.transactions_table = "transactions"
        self.logger = get_logger("money_market.investments")
        self._locks = KeyedLocks()

    def associate_token(self, owner_id: str) -> User:
        """Associate the fund token with the investor's ledger account"""
        user = self.users.require_user(owner_id)
        if not user.ledger_account_id:
            raise InvalidInputError("Please set up your ledger account first",
                                    {"user_id": owner_id})
        if user.token_associated:
            raise ConflictError("Token is already associated with your account",
                                {"user_id": owner_id})
        token = self.tokens.require_active()

        self.ledger.associate(user.ledger_account_id, token.token_id, signer=user.ledger_account_id)
        user = self.users.mark_token_associated(user.id)

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.TOKEN_ASSOCIATED, "user", user.id,
                {"ledger_account_id": user.ledger_account_id, "token_id": token.token_id},
                user.id
            )
        log_action(self.logger, "info", "Token associated", user_id=user.id,
                   action="associate_token", resource=f"user:{user.id}")
        return user

    def invest(self, owner_id: str, amount_fiat: Any, payment_method: Any,
               payment_reference: Optional[str] = None) -> Investment:
        """
        Buy fund tokens 1:1 with the deposited amount.

        Args:
            owner_id: Investor user ID
            amount_fiat: Deposit amount in fiat units (must be positive)
            payment_method: mtn_momo, airtel_money or bank_transfer
            payment_reference: Reference from the payment rail

        Returns:
            The active Investment

        Raises:
            InvalidInputError: bad amount or method, or the investor is not set up
            NotFoundError: unknown investor, or no token yet
            LedgerRejectedError: the treasury transfer failed
        """
        amount = to_decimal(amount_fiat, "amount")
        if amount <= 0:
            raise InvalidInputError("Invalid investment amount", {"amount": str(amount)})
        method = _parse_payment_method(payment_method)

        user = self.users.require_user(owner_id)
        if not user.ledger_account_id:
            raise InvalidInputError("Please set up your ledger account first")
        if not user.token_associated:
            raise InvalidInputError("Please associate the token with your account first")
        token = self.tokens.require_active()

        token_amount = int((amount * (Decimal(10) ** token.decimals)).to_integral_value(rounding=ROUND_FLOOR))
        if token_amount <= 0:
            raise InvalidInputError("Amount is below the smallest token unit", {"amount": str(amount)})

        transaction = self._open_transaction(
            owner_id=user.id,
            transaction_type=TransactionType.DEPOSIT,
            amount_fiat=amount,
            token_amount=token_amount,
            payment_method=method,
            payment_reference=payment_reference,
            description=f"Investment of {amount}",
        )

        try:
            receipt = self.ledger.transfer(
                token.token_id, token.treasury_account_id, user.ledger_account_id, token_amount
            )
        except Exception as e:
            self._fail_transaction(transaction, e)
            raise

        now = datetime.now(timezone.utc)
        investment = Investment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=user.id,
            principal_amount=amount,
            token_amount=token_amount,
            investment_date=now,
            interest_rate_at_open=self.interest_engine.annual_rate_percent,
            ledger_transaction_id=receipt.transaction_id,
        )
        self.storage.insert(self.investments_table, investment.id, investment.to_dict())

        transaction.investment_id = investment.id
        self._complete_transaction(transaction, receipt.transaction_id)

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.INVESTMENT_OPENED, "investment", investment.id,
                {"amount": amount, "token_amount": token_amount,
                 "rate_percent": investment.interest_rate_at_open},
                user.id
            )
        log_action(
            self.logger, "info", f"Investment successful: {investment.id}",
            user_id=user.id, action="invest", resource=f"investment:{investment.id}",
            extra={"amount": str(amount), "token_amount": token_amount}
        )
        return investment

    def redeem(self, owner_id: str, investment_id: str,
               withdrawal_method: Any = PaymentMethod.MTN_MOMO) -> Dict[str, Any]:
        """
        Redeem a whole active investment for principal plus interest.

        The investor's tokens go back to the treasury. If the ledger refuses
        the transfer the investment stays active and the withdrawal
        transaction is marked failed.
        """
        method = _parse_payment_method(withdrawal_method)

        with self._locks.hold(investment_id):
            investment = self._load_investment(investment_id)
            if not investment or investment.owner_id != owner_id or not investment.is_active:
                raise NotFoundError("Investment not found or already redeemed",
                                    {"investment_id": investment_id})
            user = self.users.require_user(owner_id)
            if not user.ledger_account_id:
                raise InvalidInputError("User ledger account not properly configured")
            token = self.tokens.require_active()

            valuation = self._value(investment)
            transaction = self._open_transaction(
                owner_id=user.id,
                transaction_type=TransactionType.WITHDRAWAL,
                amount_fiat=valuation.total_value,
                token_amount=investment.token_amount,
                payment_method=method,
                description=f"Redemption of investment {investment.id}",
                investment_id=investment.id,
            )

            try:
                receipt = self.ledger.transfer(
                    token.token_id, user.ledger_account_id, token.treasury_account_id,
                    investment.token_amount, signer=user.ledger_account_id
                )
            except Exception as e:
                self._fail_transaction(transaction, e)
                raise

            now = datetime.now(timezone.utc)
            investment.status = InvestmentStatus.REDEEMED
            investment.redemption_date = now
            investment.redemption_amount = valuation.total_value
            investment.interest_accrued = valuation.interest
            investment.redemption_transaction_id = receipt.transaction_id
            investment.updated_at = now
            investment.version = self.storage.update_if_version(
                self.investments_table, investment.id, investment.to_dict(), investment.version
            )
            self._complete_transaction(transaction, receipt.transaction_id)

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.INVESTMENT_REDEEMED, "investment", investment.id,
                {"principal": investment.principal_amount, "interest": valuation.interest,
                 "total": valuation.total_value},
                user.id
            )
        log_action(
            self.logger, "info", f"Redemption successful: {investment.id}",
            user_id=user.id, action="redeem", resource=f"investment:{investment.id}",
            extra={"total": str(valuation.total_value)}
        )
        return {
            "investment_id": investment.id,
            "principal": round_money(investment.principal_amount),
            "interest_earned": valuation.interest,
            "total_amount": valuation.total_value,
            "tokens_redeemed": investment.token_amount,
            "days_invested": valuation.days_elapsed,
            "transaction_id": receipt.transaction_id,
            "redemption_date": investment.redemption_date,
        }

    def get_portfolio(self, owner_id: str) -> Dict[str, Any]:
        """Active investments valued now, with totals and the ledger balance"""
        user = self.users.require_user(owner_id)
        investments = sorted(
            (i for i in self._investments_for(owner_id) if i.is_active),
            key=lambda i: i.investment_date, reverse=True
        )

        entries = [
            PortfolioEntry(
                identity=i.id,
                amount=i.principal_amount,
                start_time=i.investment_date,
                rate_percent=i.interest_rate_at_open if self.rate_mode == AccrualRateMode.SNAPSHOT else None,
            )
            for i in investments
        ]
        summary = self.interest_engine.compute_portfolio(entries)
        by_id = {i.id: i for i in investments}
        detail = []
        for entry in summary["investments"]:
            investment = by_id[entry["investment_id"]]
            detail.append({
                "id": investment.id,
                "amount": round_money(investment.principal_amount),
                "token_amount": investment.token_amount,
                "investment_date": investment.investment_date,
                "interest_rate_at_open": investment.interest_rate_at_open,
                "days_invested": entry["days_elapsed"],
                "interest_earned": entry["interest"],
                "current_value": entry["total_value"],
            })

        return {
            "summary": {
                "total_invested": summary["total_principal"],
                "total_interest": summary["total_interest"],
                "current_value": summary["total_value"],
                "active_investments": summary["number_of_investments"],
                "token_balance": self._ledger_balance(user),
            },
            "investments": detail,
            "rates": self.interest_engine.get_current_rates(),
            "breakdown": self.interest_engine.compute_daily_breakdown(summary["total_principal"]),
        }

    def list_transactions(self, owner_id: str, transaction_type: Optional[Any] = None,
                          page: int = 1, limit: int = 50) -> Dict[str, Any]:
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise InvalidInputError("page must be a positive integer")
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        filters: Dict[str, Any] = {"owner_id": owner_id}
        if transaction_type is not None:
            try:
                filters["transaction_type"] = TransactionType(
                    transaction_type.value if isinstance(transaction_type, TransactionType) else transaction_type
                ).value
            except ValueError:
                raise InvalidInputError(f"Invalid transaction type: {transaction_type}")

        transactions = sorted(
            (Transaction.from_dict(d) for d in self.storage.find(self.transactions_table, filters)),
            key=lambda t: t.created_at, reverse=True
        )
        total = len(transactions)
        start = (page - 1) * limit
        return {
            "transactions": transactions[start:start + limit],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    def get_investment(self, investment_id: str) -> Investment:
        investment = self._load_investment(investment_id)
        if not investment:
            raise NotFoundError(f"Investment {investment_id} not found")
        return investment

    def get_transaction(self, transaction_id: str) -> Transaction:
        data = self.storage.load(self.transactions_table, transaction_id)
        if not data:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return Transaction.from_dict(data)

    # Helpers

    def _value(self, investment: Investment):
        rate = investment.interest_rate_at_open if self.rate_mode == AccrualRateMode.SNAPSHOT else None
        return self.interest_engine.compute_value(
            investment.principal_amount, investment.investment_date, rate_percent=rate
        )

    def _ledger_balance(self, user: User) -> Optional[int]:
        token = self.tokens.get_active()
        if not token or not user.ledger_account_id:
            return None
        try:
            balance = self.ledger.query_balance(user.ledger_account_id)
        except LedgerRejectedError as e:
            self.logger.warning(f"Balance lookup failed for {user.id}: {e.message}")
            return None
        return balance.tokens.get(token.token_id, 0)

    def _investments_for(self, owner_id: str) -> List[Investment]:
        return [
            Investment.from_dict(d)
            for d in self.storage.find(self.investments_table, {"owner_id": owner_id})
        ]

    def _load_investment(self, investment_id: str) -> Optional[Investment]:
        data = self.storage.load(self.investments_table, investment_id)
        return Investment.from_dict(data) if data else None

    def _open_transaction(self, **fields) -> Transaction:
        now = datetime.now(timezone.utc)
        transaction = Transaction(id=str(uuid.uuid4()), created_at=now, updated_at=now, **fields)
        self.storage.insert(self.transactions_table, transaction.id, transaction.to_dict())
        return transaction

    def _complete_transaction(self, transaction: Transaction, ledger_transaction_id: str) -> None:
        now = datetime.now(timezone.utc)
        transaction.status = TransactionStatus.COMPLETED
        transaction.ledger_transaction_id = ledger_transaction_id
        transaction.completed_at = now
        transaction.updated_at = now
        self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())

    def _fail_transaction(self, transaction: Transaction, error: Exception) -> None:
        """Mark transaction as failed"""
        transaction.status = TransactionStatus.FAILED
        if isinstance(error, MoneyMarketError):
            transaction.metadata = {"error": error.message, "error_code": error.code}
        else:
            transaction.metadata = {"error": str(error), "error_code": "EXECUTION_FAILED"}
        if isinstance(error, LedgerRejectedError):
            transaction.metadata["ledger_status"] = error.ledger_status
        transaction.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.TRANSACTION_FAILED, "transaction", transaction.id,
                dict(transaction.metadata), transaction.owner_id
            )
        log_action(
            self.logger, "error", f"Transaction failed: {transaction.metadata['error']}",
            user_id=transaction.owner_id, action=transaction.transaction_type.value,
            resource=f"transaction:{transaction.id}", extra=dict(transaction.metadata)
        )
