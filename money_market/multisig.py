"""
Multi-Signature Workflow Module

Two-manager approval for privileged fund operations: token creation,
supply minting and burning, and interest rate changes.

A request is initiated (and implicitly signed) by one manager, approved by a
second, and then executed against the ledger or the interest engine. Requests
left unsigned for longer than the expiry window are rejected lazily, the next
time anyone touches them.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from enum import Enum
import math
import uuid

from .audit import AuditTrail, AuditEventType
from .config import FundConfig
from .errors import (
    MoneyMarketError, InvalidInputError, NotFoundError, InvalidStateError,
    ExpiredError, DuplicateSignatureError, ConflictError, LedgerRejectedError
)
from .interest import InterestEngine
from .ledger_gateway import LedgerGateway, TokenConfig
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, KeyedLocks, parse_datetime, format_datetime
from .tokens import TokenRegistry
from .users import User, UserDirectory


REQUIRED_SIGNATURES = 2
MAX_PAGE_SIZE = 100


class RequestType(Enum):
    """Operations that need two manager signatures"""
    TOKEN_CREATION = "token_creation"
    TOKEN_MINT = "token_mint"
    TOKEN_BURN = "token_burn"
    INTEREST_DISTRIBUTION = "interest_distribution"
    RATE_CHANGE = "rate_change"


class RequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"


LEDGER_REQUEST_TYPES = {RequestType.TOKEN_CREATION, RequestType.TOKEN_MINT, RequestType.TOKEN_BURN}


@dataclass
class Signature:
    """One manager's approval"""
    manager_id: str
    manager_account_id: Optional[str]
    signed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "manager_id": self.manager_id,
            "manager_account_id": self.manager_account_id,
            "signed_at": self.signed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Signature':
        return cls(
            manager_id=data['manager_id'],
            manager_account_id=data.get('manager_account_id'),
            signed_at=parse_datetime(data['signed_at']),
        )


@dataclass
class MultiSigRequest(StorageRecord):
    """A privileged operation awaiting, or past, its two signatures"""
    request_type: RequestType
    description: str
    request_data: Dict[str, Any]
    created_by: str
    expires_at: datetime
    required_signatures: int = REQUIRED_SIGNATURES
    signatures: List[Signature] = field(default_factory=list)
    status: RequestStatus = RequestStatus.PENDING
    executed_at: Optional[datetime] = None
    execution_reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @property
    def signer_ids(self) -> List[str]:
        return [s.manager_id for s in self.signatures]

    @property
    def signer_accounts(self) -> List[str]:
        """Ledger keys of the signers, in the order they signed"""
        return [s.manager_account_id for s in self.signatures]

    @property
    def has_quorum(self) -> bool:
        return len(self.signatures) >= self.required_signatures

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "request_type": self.request_type.value,
            "description": self.description,
            "request_data": dict(self.request_data),
            "created_by": self.created_by,
            "expires_at": self.expires_at.isoformat(),
            "required_signatures": self.required_signatures,
            "signatures": [s.to_dict() for s in self.signatures],
            "status": self.status.value,
            "executed_at": format_datetime(self.executed_at),
            "execution_reference": self.execution_reference,
            "metadata": dict(self.metadata),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MultiSigRequest':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            request_type=RequestType(data['request_type']),
            description=data.get('description', ''),
            request_data=data.get('request_data') or {},
            created_by=data['created_by'],
            expires_at=parse_datetime(data['expires_at']),
            required_signatures=data.get('required_signatures', REQUIRED_SIGNATURES),
            signatures=[Signature.from_dict(s) for s in data.get('signatures', [])],
            status=RequestStatus(data['status']),
            executed_at=parse_datetime(data.get('executed_at')),
            execution_reference=data.get('execution_reference'),
            metadata=data.get('metadata') or {},
            version=data.get('version', 0),
        )


@dataclass
class ExecutionResult:
    """Outcome of a successful approval or execution"""
    request: MultiSigRequest
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def executed(self) -> bool:
        return self.request.status == RequestStatus.EXECUTED


def _positive_amount(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidInputError("amount must be a positive integer (smallest token units)",
                                {"amount": value})
    return value


class MultiSigWorkflow:
    """
    Initiation, approval, execution and rejection of multi-signature requests.

    Every read-modify-write on a request runs under that request's lock and
    is persisted with a version check, so concurrent approvals of the same
    request execute it at most once.
    """

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
        self.table_name = "multisig_requests"
        self.expiry = timedelta(hours=self.config.multisig_expiry_hours)
        self.logger = get_logger("money_market.multisig")
        self._locks = KeyedLocks()

        self._validators: Dict[RequestType, Callable[[Dict[str, Any]], Tuple[Dict[str, Any], str]]] = {
            RequestType.TOKEN_CREATION: self._validate_token_creation,
            RequestType.TOKEN_MINT: self._validate_mint,
            RequestType.TOKEN_BURN: self._validate_burn,
            RequestType.RATE_CHANGE: self._validate_rate_change,
        }
        self._executors: Dict[RequestType, Callable[[MultiSigRequest], Tuple[Optional[str], Dict[str, Any]]]] = {
            RequestType.TOKEN_CREATION: self._execute_token_creation,
            RequestType.TOKEN_MINT: self._execute_mint,
            RequestType.TOKEN_BURN: self._execute_burn,
            RequestType.RATE_CHANGE: self._execute_rate_change,
        }

    # Operations

    def initiate(self, request_type: Any, request_data: Optional[Dict[str, Any]],
                 initiator_id: str) -> MultiSigRequest:
        """
        Create a pending request carrying the initiator's signature.

        Raises:
            NotAuthorizedError: initiator is not a manager
            InvalidInputError: unknown type, bad data, or a type with no executor
            ConflictError: token creation while a token already exists
            NotFoundError: mint or burn before the token exists
        """
        initiator = self.users.require_manager(initiator_id)
        request_type = self._parse_type(request_type)

        validator = self._validators.get(request_type)
        if validator is None:
            raise InvalidInputError(
                f"Request type {request_type.value} cannot be executed",
                {"request_type": request_type.value}
            )
        data, description = validator(dict(request_data or {}))
        if request_type in LEDGER_REQUEST_TYPES:
            self._require_signing_key(initiator)

        now = datetime.now(timezone.utc)
        request = MultiSigRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            request_type=request_type,
            description=description,
            request_data=data,
            created_by=initiator.id,
            expires_at=now + self.expiry,
            signatures=[Signature(initiator.id, initiator.ledger_account_id, now)],
        )
        self.storage.insert(self.table_name, request.id, request.to_dict())

        self._audit(AuditEventType.REQUEST_INITIATED, request, initiator.id,
                    {"request_type": request_type.value, "request_data": data})
        log_action(
            self.logger, "info", f"Multi-sig request initiated: {description}",
            user_id=initiator.id, action="initiate", resource=f"multisig_request:{request.id}",
            extra={"request_type": request_type.value}
        )
        return request

    def approve(self, request_id: str, approver_id: str) -> ExecutionResult:
        """
        Add the approver's signature; on quorum the request is executed immediately.

        Raises:
            NotAuthorizedError, NotFoundError, InvalidStateError, ExpiredError,
            DuplicateSignatureError, plus whatever the execution raises
            (the request is then persisted as rejected).
        """
        approver = self.users.require_manager(approver_id)

        with self._locks.hold(request_id):
            request = self._require(request_id)
            if request.status != RequestStatus.PENDING:
                raise InvalidStateError(
                    f"Request is already {request.status.value}",
                    {"request_id": request_id, "status": request.status.value}
                )
            if request.is_expired():
                self._expire(request)
                raise ExpiredError("Request has expired", {"request_id": request_id})
            if approver.id in request.signer_ids:
                raise DuplicateSignatureError(
                    "You have already signed this request",
                    {"request_id": request_id, "manager_id": approver.id}
                )
            if request.request_type in LEDGER_REQUEST_TYPES:
                self._require_signing_key(approver)

            request.signatures.append(Signature(approver.id, approver.ledger_account_id))
            if request.has_quorum:
                request.status = RequestStatus.APPROVED
            self._persist(request)

            self._audit(AuditEventType.REQUEST_SIGNED, request, approver.id,
                        {"signatures": len(request.signatures)})
            if request.status != RequestStatus.APPROVED:
                return ExecutionResult(request)

            self._audit(AuditEventType.REQUEST_APPROVED, request, approver.id,
                        {"signers": request.signer_ids})
            log_action(
                self.logger, "info", "Multi-sig request approved",
                user_id=approver.id, action="approve", resource=f"multisig_request:{request.id}"
            )
            return self._run(request)

    def execute(self, request_id: str) -> ExecutionResult:
        """
        Execute an approved request. Safe to repeat after a crash between
        approval and execution: ledger calls are keyed by the request id.
        """
        with self._locks.hold(request_id):
            request = self._require(request_id)
            if request.status != RequestStatus.APPROVED:
                raise InvalidStateError(
                    f"Only approved requests can be executed (status: {request.status.value})",
                    {"request_id": request_id, "status": request.status.value}
                )
            return self._run(request)

    def reject(self, request_id: str, manager_id: str, reason: Optional[str] = None) -> MultiSigRequest:
        """Explicitly reject a pending request"""
        manager = self.users.require_manager(manager_id)

        with self._locks.hold(request_id):
            request = self._require(request_id)
            if request.status != RequestStatus.PENDING:
                raise InvalidStateError(
                    f"Request is already {request.status.value}",
                    {"request_id": request_id, "status": request.status.value}
                )
            if request.is_expired():
                self._expire(request)
                raise ExpiredError("Request has expired", {"request_id": request_id})

            request.status = RequestStatus.REJECTED
            request.metadata.update({
                "rejected_by": manager.id,
                "reason": reason or "Rejected by manager",
            })
            self._persist(request)

        self._audit(AuditEventType.REQUEST_REJECTED, request, manager.id, {"reason": reason})
        log_action(
            self.logger, "info", "Multi-sig request rejected",
            user_id=manager.id, action="reject", resource=f"multisig_request:{request.id}",
            extra={"reason": reason}
        )
        return request

    def get_request(self, request_id: str) -> MultiSigRequest:
        """Load a request, applying lazy expiry"""
        request = self._require(request_id)
        if request.status == RequestStatus.PENDING and request.is_expired():
            request = self._expire_by_id(request_id)
        return request

    def list_pending(self, excluding_manager_id: Optional[str] = None) -> List[MultiSigRequest]:
        """Pending, unexpired requests the given manager has not signed yet, newest first"""
        now = datetime.now(timezone.utc)
        requests = [
            MultiSigRequest.from_dict(d)
            for d in self.storage.find(self.table_name, {"status": RequestStatus.PENDING.value})
        ]
        pending = [
            r for r in requests
            if not r.is_expired(now)
            and (excluding_manager_id is None or excluding_manager_id not in r.signer_ids)
        ]
        return sorted(pending, key=lambda r: r.created_at, reverse=True)

    def list_all(self, status: Optional[Any] = None, page: int = 1,
                 limit: int = 50) -> Dict[str, Any]:
        """All requests (optionally by status), newest first, paginated"""
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise InvalidInputError("page must be a positive integer")
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        self._expire_stale()
        if status is not None:
            status = self._parse_status(status)
            records = self.storage.find(self.table_name, {"status": status.value})
        else:
            records = self.storage.load_all(self.table_name)

        requests = sorted(
            (MultiSigRequest.from_dict(d) for d in records),
            key=lambda r: r.created_at, reverse=True
        )
        total = len(requests)
        start = (page - 1) * limit
        return {
            "requests": requests[start:start + limit],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    # Validation

    def _parse_type(self, value: Any) -> RequestType:
        if isinstance(value, RequestType):
            return value
        try:
            return RequestType(value)
        except ValueError:
            raise InvalidInputError(f"Invalid request type: {value}", {"request_type": value})

    def _parse_status(self, value: Any) -> RequestStatus:
        if isinstance(value, RequestStatus):
            return value
        try:
            return RequestStatus(value)
        except ValueError:
            raise InvalidInputError(f"Invalid request status: {value}", {"status": value})

    def _require_signing_key(self, manager: User) -> None:
        if not manager.ledger_account_id:
            raise InvalidInputError(
                "Manager has no ledger account to sign with",
                {"manager_id": manager.id}
            )

    def _validate_token_creation(self, data: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        if self.tokens.exists():
            raise ConflictError("Token already exists")

        name = data.get("name") or self.config.token_name
        symbol = data.get("symbol") or self.config.token_symbol
        decimals = data.get("decimals", self.config.token_decimals)
        initial_supply = data.get("initial_supply", self.config.token_initial_supply)
        if not isinstance(name, str) or not isinstance(symbol, str):
            raise InvalidInputError("Token name and symbol must be strings")
        if isinstance(decimals, bool) or not isinstance(decimals, int) or not 0 <= decimals <= 18:
            raise InvalidInputError("decimals must be an integer between 0 and 18")
        if isinstance(initial_supply, bool) or not isinstance(initial_supply, int) or initial_supply < 0:
            raise InvalidInputError("initial_supply must be a non-negative integer")

        normalized = {
            "name": name,
            "symbol": symbol,
            "decimals": decimals,
            "initial_supply": initial_supply,
        }
        return normalized, f"Create {name} ({symbol}) token"

    def _validate_mint(self, data: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        amount = _positive_amount(data.get("amount"))
        token = self.tokens.require_active()
        return {"amount": amount}, f"Mint {amount} units of {token.symbol}"

    def _validate_burn(self, data: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        amount = _positive_amount(data.get("amount"))
        token = self.tokens.require_active()
        if amount > token.total_supply:
            raise InvalidInputError(
                "Cannot burn more than the current supply",
                {"amount": amount, "total_supply": token.total_supply}
            )
        return {"amount": amount}, f"Burn {amount} units of {token.symbol}"

    def _validate_rate_change(self, data: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        new_rate = self.interest_engine.validate_rate(data.get("new_rate"))
        previous_rate = self.interest_engine.annual_rate_percent
        normalized = {"new_rate": str(new_rate), "previous_rate": str(previous_rate)}
        return normalized, f"Change interest rate from {previous_rate}% to {new_rate}%"

    # Execution

    def _run(self, request: MultiSigRequest) -> ExecutionResult:
        """Dispatch an approved request; caller holds the request lock"""
        executor = self._executors.get(request.request_type)
        try:
            if executor is None:
                raise InvalidInputError(f"No executor for {request.request_type.value}")
            reference, details = executor(request)
        except MoneyMarketError as e:
            self._fail(request, e.message, e.code,
                       e.ledger_status if isinstance(e, LedgerRejectedError) else None)
            raise
        except Exception as e:
            self._fail(request, str(e), "EXECUTION_FAILED", None)
            raise

        request.status = RequestStatus.EXECUTED
        request.executed_at = datetime.now(timezone.utc)
        request.execution_reference = reference
        self._persist(request)

        self._audit(AuditEventType.REQUEST_EXECUTED, request, None,
                    {"execution_reference": reference})
        log_action(
            self.logger, "info", f"Multi-sig request executed: {request.description}",
            action="execute", resource=f"multisig_request:{request.id}",
            extra={"request_type": request.request_type.value, "execution_reference": reference}
        )
        return ExecutionResult(request, details)

    def _fail(self, request: MultiSigRequest, message: str, code: str,
              ledger_status: Optional[str]) -> None:
        request.status = RequestStatus.REJECTED
        request.metadata.update({"error": message, "error_code": code})
        if ledger_status:
            request.metadata["ledger_status"] = ledger_status
        self._persist(request)

        self._audit(AuditEventType.REQUEST_REJECTED, request, None, dict(request.metadata))
        log_action(
            self.logger, "error", f"Multi-sig execution failed: {message}",
            action="execute", resource=f"multisig_request:{request.id}",
            extra={"error_code": code, "ledger_status": ledger_status}
        )

    def _execute_token_creation(self, request: MultiSigRequest) -> Tuple[Optional[str], Dict[str, Any]]:
        if self.tokens.exists():
            raise ConflictError("Token already exists")

        data = request.request_data
        result = self.ledger.create_token(
            TokenConfig(
                name=data["name"],
                symbol=data["symbol"],
                decimals=data["decimals"],
                initial_supply=data["initial_supply"],
            ),
            request.signer_accounts,
            idempotency_key=request.id,
        )
        token = self.tokens.create(
            token_id=result.token_id,
            name=result.name,
            symbol=result.symbol,
            decimals=result.decimals,
            treasury_account_id=result.treasury_account_id,
            manager_account_ids=request.signer_accounts,
            creation_transaction_id=result.transaction_id,
            initial_supply=result.initial_supply,
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.TOKEN_CREATED, "token", token.token_id,
                {"symbol": token.symbol, "request_id": request.id}
            )
        return result.transaction_id, {
            "token_id": token.token_id,
            "name": token.name,
            "symbol": token.symbol,
            "decimals": token.decimals,
            "treasury_account_id": token.treasury_account_id,
            "transaction_id": result.transaction_id,
        }

    def _execute_mint(self, request: MultiSigRequest) -> Tuple[Optional[str], Dict[str, Any]]:
        amount = request.request_data["amount"]
        token = self.tokens.require_active()
        receipt = self.ledger.mint(token.token_id, amount, request.signer_accounts,
                                   idempotency_key=request.id)
        token = self.tokens.adjust_supply(amount)
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.TOKEN_MINTED, "token", token.token_id,
                {"amount": amount, "total_supply": token.total_supply, "request_id": request.id}
            )
        return receipt.transaction_id, {
            "token_id": token.token_id,
            "amount": amount,
            "total_supply": token.total_supply,
            "transaction_id": receipt.transaction_id,
        }

    def _execute_burn(self, request: MultiSigRequest) -> Tuple[Optional[str], Dict[str, Any]]:
        amount = request.request_data["amount"]
        token = self.tokens.require_active()
        if amount > token.total_supply:
            raise InvalidInputError(
                "Cannot burn more than the current supply",
                {"amount": amount, "total_supply": token.total_supply}
            )
        receipt = self.ledger.burn(token.token_id, amount, request.signer_accounts,
                                   idempotency_key=request.id)
        token = self.tokens.adjust_supply(-amount)
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.TOKEN_BURNED, "token", token.token_id,
                {"amount": amount, "total_supply": token.total_supply, "request_id": request.id}
            )
        return receipt.transaction_id, {
            "token_id": token.token_id,
            "amount": amount,
            "total_supply": token.total_supply,
            "transaction_id": receipt.transaction_id,
        }

    def _execute_rate_change(self, request: MultiSigRequest) -> Tuple[Optional[str], Dict[str, Any]]:
        result = self.interest_engine.update_rate(
            Decimal(request.request_data["new_rate"]), updated_by=request.created_by
        )
        return f"rate_change:{request.id}", result

    # Persistence

    def _require(self, request_id: str) -> MultiSigRequest:
        data = self.storage.load(self.table_name, request_id)
        if not data:
            raise NotFoundError(f"Request {request_id} not found", {"request_id": request_id})
        return MultiSigRequest.from_dict(data)

    def _persist(self, request: MultiSigRequest) -> None:
        request.updated_at = datetime.now(timezone.utc)
        request.version = self.storage.update_if_version(
            self.table_name, request.id, request.to_dict(), request.version
        )

    def _expire(self, request: MultiSigRequest) -> None:
        request.status = RequestStatus.REJECTED
        request.metadata.update({"reason": "expired"})
        self._persist(request)
        self._audit(AuditEventType.REQUEST_EXPIRED, request, None,
                    {"expires_at": request.expires_at.isoformat()})
        log_action(
            self.logger, "info", "Multi-sig request expired",
            action="expire", resource=f"multisig_request:{request.id}"
        )

    def _expire_by_id(self, request_id: str) -> MultiSigRequest:
        with self._locks.hold(request_id):
            request = self._require(request_id)
            if request.status == RequestStatus.PENDING and request.is_expired():
                self._expire(request)
            return request

    def _expire_stale(self) -> None:
        now = datetime.now(timezone.utc)
        for data in self.storage.find(self.table_name, {"status": RequestStatus.PENDING.value}):
            if parse_datetime(data['expires_at']) < now:
                self._expire_by_id(data['id'])

    def _audit(self, event_type: AuditEventType, request: MultiSigRequest,
               user_id: Optional[str], metadata: Dict[str, Any]) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(event_type, "multisig_request", request.id, metadata, user_id)
