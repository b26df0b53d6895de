"""
Ledger Gateway Module

Contract for the external distributed-ledger token service, plus two
implementations: an httpx REST client for the ledger integration service and
an in-memory simulation used by tests and local runs.

Privileged operations (token creation, mint, burn) must be co-signed by the
two manager keys, in the order the signatures were collected. Every failure
surfaces as LedgerRejectedError; nothing here retries.
"""

import httpx
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import LedgerRejectedError

logger = logging.getLogger("money_market.ledger")


@dataclass
class TokenConfig:
    """Parameters for a new fungible token"""
    name: str
    symbol: str
    decimals: int = 2
    initial_supply: int = 0


@dataclass
class TokenCreationResult:
    token_id: str
    name: str
    symbol: str
    decimals: int
    initial_supply: int
    treasury_account_id: str
    transaction_id: str
    managers: List[str] = field(default_factory=list)


@dataclass
class LedgerReceipt:
    """Receipt of a submitted ledger transaction"""
    transaction_id: str
    status: str
    amount: Optional[int] = None
    total_supply: Optional[int] = None


@dataclass
class TokenInfo:
    token_id: str
    name: str
    symbol: str
    decimals: int
    total_supply: int
    treasury_account_id: str


@dataclass
class AccountBalance:
    account_id: str
    tokens: Dict[str, int] = field(default_factory=dict)


class LedgerGateway(ABC):
    """Operations the fund needs from the distributed ledger"""

    @abstractmethod
    def create_token(self, config: TokenConfig, signers: Sequence[str],
                     idempotency_key: Optional[str] = None) -> TokenCreationResult:
        """Create the fund token with a 2-of-2 admin/supply/freeze/wipe key set"""
        pass

    @abstractmethod
    def mint(self, token_id: str, amount: int, signers: Sequence[str],
             idempotency_key: Optional[str] = None) -> LedgerReceipt:
        """Mint supply into the treasury"""
        pass

    @abstractmethod
    def burn(self, token_id: str, amount: int, signers: Sequence[str],
             idempotency_key: Optional[str] = None) -> LedgerReceipt:
        """Burn supply held by the treasury"""
        pass

    @abstractmethod
    def transfer(self, token_id: str, from_account: str, to_account: str, amount: int,
                 signer: Optional[str] = None) -> LedgerReceipt:
        """Move balance; signer is the sender's key when the sender is not the treasury"""
        pass

    @abstractmethod
    def associate(self, account_id: str, token_id: str, signer: str) -> LedgerReceipt:
        """Allow an account to hold the token (once per account)"""
        pass

    @abstractmethod
    def query_balance(self, account_id: str) -> AccountBalance:
        pass

    @abstractmethod
    def query_token_info(self, token_id: str) -> TokenInfo:
        pass

    def health_check(self) -> bool:
        """Whether the ledger answers; the simulated ledger always does"""
        return True

    def close(self) -> None:
        pass

    @staticmethod
    def require_signers(signers: Sequence[str]) -> List[str]:
        """Both manager keys must co-sign, and they must differ"""
        signer_list = [s for s in signers if s]
        if len(signer_list) != 2 or signer_list[0] == signer_list[1]:
            raise LedgerRejectedError(
                "Privileged ledger operations require two distinct signer keys",
                ledger_status="INVALID_SIGNATURE",
                details={"signers": list(signers)}
            )
        return signer_list


class HttpLedgerGateway(LedgerGateway):
    """REST client for the ledger integration service"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=self.base_url, timeout=timeout, headers=headers, transport=transport
        )

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                 idempotency_key: Optional[str] = None,
                 required: Sequence[str] = ()) -> Dict[str, Any]:
        """
        Call the ledger service and return the decoded JSON object.

        Non-2xx answers, and 2xx answers that are not a JSON object holding
        every ``required`` key, raise LedgerRejectedError.
        """
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        start = time.time()
        try:
            response = self._client.request(method, path, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Ledger service unreachable for {method} {path}: {e}")
            raise LedgerRejectedError(
                f"Ledger service unreachable: {e}", ledger_status="NETWORK_ERROR"
            ) from e
        latency_ms = (time.time() - start) * 1000

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = None

        if response.status_code >= 400:
            body = body or {}
            status = body.get("status") or f"HTTP_{response.status_code}"
            message = body.get("message") or response.text or "Ledger operation failed"
            logger.warning(
                f"Ledger rejected {method} {path}: {status} ({latency_ms:.0f} ms)"
            )
            raise LedgerRejectedError(message, ledger_status=status,
                                      details={"http_status": response.status_code})

        missing = [key for key in required if body is None or body.get(key) is None]
        if body is None or missing:
            logger.error(f"Malformed ledger response for {method} {path}: missing {missing}")
            raise LedgerRejectedError(
                "Ledger service returned a malformed response",
                ledger_status="MALFORMED_RESPONSE",
                details={"http_status": response.status_code, "missing": missing}
            )

        logger.debug(f"Ledger {method} {path} ok in {latency_ms:.0f} ms")
        return body

    def create_token(self, config: TokenConfig, signers: Sequence[str],
                     idempotency_key: Optional[str] = None) -> TokenCreationResult:
        signer_list = self.require_signers(signers)
        data = self._request("POST", "/tokens", {
            "name": config.name,
            "symbol": config.symbol,
            "decimals": config.decimals,
            "initial_supply": config.initial_supply,
            "signers": signer_list,
        }, idempotency_key, required=("token_id", "treasury_account_id", "transaction_id"))
        return TokenCreationResult(
            token_id=data["token_id"],
            name=data.get("name", config.name),
            symbol=data.get("symbol", config.symbol),
            decimals=int(data.get("decimals", config.decimals)),
            initial_supply=int(data.get("initial_supply", config.initial_supply)),
            treasury_account_id=data["treasury_account_id"],
            transaction_id=data["transaction_id"],
            managers=data.get("managers", signer_list),
        )

    def _supply_change(self, action: str, token_id: str, amount: int,
                       signers: Sequence[str], idempotency_key: Optional[str]) -> LedgerReceipt:
        signer_list = self.require_signers(signers)
        data = self._request("POST", f"/tokens/{token_id}/{action}", {
            "amount": amount,
            "signers": signer_list,
        }, idempotency_key, required=("transaction_id",))
        return LedgerReceipt(
            transaction_id=data["transaction_id"],
            status=data.get("status", "SUCCESS"),
            amount=amount,
            total_supply=data.get("total_supply"),
        )

    def mint(self, token_id: str, amount: int, signers: Sequence[str],
             idempotency_key: Optional[str] = None) -> LedgerReceipt:
        return self._supply_change("mint", token_id, amount, signers, idempotency_key)

    def burn(self, token_id: str, amount: int, signers: Sequence[str],
             idempotency_key: Optional[str] = None) -> LedgerReceipt:
        return self._supply_change("burn", token_id, amount, signers, idempotency_key)

    def transfer(self, token_id: str, from_account: str, to_account: str, amount: int,
                 signer: Optional[str] = None) -> LedgerReceipt:
        data = self._request("POST", f"/tokens/{token_id}/transfers", {
            "from_account": from_account,
            "to_account": to_account,
            "amount": amount,
            "signer": signer,
        }, required=("transaction_id",))
        return LedgerReceipt(
            transaction_id=data["transaction_id"],
            status=data.get("status", "SUCCESS"),
            amount=amount,
        )

    def associate(self, account_id: str, token_id: str, signer: str) -> LedgerReceipt:
        data = self._request("POST", f"/accounts/{account_id}/associations", {
            "token_id": token_id,
            "signer": signer,
        }, required=("transaction_id",))
        return LedgerReceipt(transaction_id=data["transaction_id"],
                             status=data.get("status", "SUCCESS"))

    def query_balance(self, account_id: str) -> AccountBalance:
        data = self._request("GET", f"/accounts/{account_id}/balance", required=("tokens",))
        return AccountBalance(
            account_id=account_id,
            tokens={k: int(v) for k, v in data.get("tokens", {}).items()},
        )

    def query_token_info(self, token_id: str) -> TokenInfo:
        data = self._request(
            "GET", f"/tokens/{token_id}",
            required=("token_id", "name", "symbol", "decimals", "total_supply", "treasury_account_id")
        )
        return TokenInfo(
            token_id=data["token_id"],
            name=data["name"],
            symbol=data["symbol"],
            decimals=int(data["decimals"]),
            total_supply=int(data["total_supply"]),
            treasury_account_id=data["treasury_account_id"],
        )

    def health_check(self) -> bool:
        try:
            return self._client.get("/health").status_code == 200
        except httpx.HTTPError:
            return False

    def close(self) -> None:
        """Close the HTTP client"""
        self._client.close()


class InMemoryLedgerGateway(LedgerGateway):
    """
    Simulated ledger: tracks supply, balances and associations in memory.

    ``fail_next(operation, status)`` makes the next call of that operation
    raise LedgerRejectedError, and ``calls`` records every call that reached
    the simulated network (idempotent replays are not recorded).
    """

    def __init__(self, treasury_account_id: str = "0.0.treasury"):
        self.treasury_account_id = treasury_account_id
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self._tokens: Dict[str, TokenInfo] = {}
        self._balances: Dict[Tuple[str, str], int] = {}
        self._associations = set()
        self._idempotent_results: Dict[Tuple[str, str], Any] = {}
        self._failures: Dict[str, str] = {}
        self._admin_keys: Dict[str, set] = {}
        self._ids = itertools.count(1001)
        self._lock = threading.RLock()

    def fail_next(self, operation: str, status: str = "TRANSACTION_REJECTED") -> None:
        with self._lock:
            self._failures[operation] = status

    def _transaction_id(self) -> str:
        return f"0.0.{next(self._ids)}@{time.time():.9f}"

    def _check_failure(self, operation: str) -> None:
        status = self._failures.pop(operation, None)
        if status:
            raise LedgerRejectedError(f"Ledger rejected {operation}: {status}", ledger_status=status)

    def _replay(self, operation: str, idempotency_key: Optional[str]):
        if idempotency_key is None:
            return None
        return self._idempotent_results.get((operation, idempotency_key))

    def _remember(self, operation: str, idempotency_key: Optional[str], result: Any) -> None:
        if idempotency_key is not None:
            self._idempotent_results[(operation, idempotency_key)] = result

    def _token(self, token_id: str) -> TokenInfo:
        token = self._tokens.get(token_id)
        if token is None:
            raise LedgerRejectedError(f"Unknown token {token_id}", ledger_status="INVALID_TOKEN_ID")
        return token

    def _check_admin_keys(self, token_id: str, signers: List[str]) -> None:
        if set(signers) != self._admin_keys.get(token_id, set()):
            raise LedgerRejectedError("Signers do not hold the token supply key",
                                      ledger_status="INVALID_SIGNATURE")

    @staticmethod
    def _positive(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise LedgerRejectedError("Amount must be a positive integer",
                                      ledger_status="INVALID_TOKEN_AMOUNT")

    def create_token(self, config: TokenConfig, signers: Sequence[str],
                     idempotency_key: Optional[str] = None) -> TokenCreationResult:
        with self._lock:
            replay = self._replay("create_token", idempotency_key)
            if replay is not None:
                return replay
            signer_list = self.require_signers(signers)
            self.calls.append(("create_token", {"config": config, "signers": signer_list}))
            self._check_failure("create_token")

            token_id = f"0.0.{next(self._ids)}"
            self._tokens[token_id] = TokenInfo(
                token_id=token_id,
                name=config.name,
                symbol=config.symbol,
                decimals=config.decimals,
                total_supply=config.initial_supply,
                treasury_account_id=self.treasury_account_id,
            )
            self._admin_keys[token_id] = set(signer_list)
            self._associations.add((self.treasury_account_id, token_id))
            self._balances[(self.treasury_account_id, token_id)] = config.initial_supply

            result = TokenCreationResult(
                token_id=token_id,
                name=config.name,
                symbol=config.symbol,
                decimals=config.decimals,
                initial_supply=config.initial_supply,
                treasury_account_id=self.treasury_account_id,
                transaction_id=self._transaction_id(),
                managers=signer_list,
            )
            self._remember("create_token", idempotency_key, result)
            return result

    def mint(self, token_id: str, amount: int, signers: Sequence[str],
             idempotency_key: Optional[str] = None) -> LedgerReceipt:
        with self._lock:
            replay = self._replay("mint", idempotency_key)
            if replay is not None:
                return replay
            signer_list = self.require_signers(signers)
            self.calls.append(("mint", {"token_id": token_id, "amount": amount, "signers": signer_list}))
            self._check_failure("mint")
            token = self._token(token_id)
            self._check_admin_keys(token_id, signer_list)
            self._positive(amount)

            token.total_supply += amount
            key = (token.treasury_account_id, token_id)
            self._balances[key] = self._balances.get(key, 0) + amount

            receipt = LedgerReceipt(self._transaction_id(), "SUCCESS", amount, token.total_supply)
            self._remember("mint", idempotency_key, receipt)
            return receipt

    def burn(self, token_id: str, amount: int, signers: Sequence[str],
             idempotency_key: Optional[str] = None) -> LedgerReceipt:
        with self._lock:
            replay = self._replay("burn", idempotency_key)
            if replay is not None:
                return replay
            signer_list = self.require_signers(signers)
            self.calls.append(("burn", {"token_id": token_id, "amount": amount, "signers": signer_list}))
            self._check_failure("burn")
            token = self._token(token_id)
            self._check_admin_keys(token_id, signer_list)
            self._positive(amount)

            key = (token.treasury_account_id, token_id)
            if self._balances.get(key, 0) < amount:
                raise LedgerRejectedError("Treasury balance too low to burn",
                                          ledger_status="INSUFFICIENT_TOKEN_BALANCE")
            token.total_supply -= amount
            self._balances[key] -= amount

            receipt = LedgerReceipt(self._transaction_id(), "SUCCESS", amount, token.total_supply)
            self._remember("burn", idempotency_key, receipt)
            return receipt

    def transfer(self, token_id: str, from_account: str, to_account: str, amount: int,
                 signer: Optional[str] = None) -> LedgerReceipt:
        with self._lock:
            self.calls.append(("transfer", {
                "token_id": token_id, "from_account": from_account,
                "to_account": to_account, "amount": amount, "signer": signer
            }))
            self._check_failure("transfer")
            token = self._token(token_id)
            self._positive(amount)

            if from_account != token.treasury_account_id and signer != from_account:
                raise LedgerRejectedError("Transfer must be signed by the sender",
                                          ledger_status="INVALID_SIGNATURE")
            for account in (from_account, to_account):
                if (account, token_id) not in self._associations:
                    raise LedgerRejectedError(
                        f"Account {account} is not associated with {token_id}",
                        ledger_status="TOKEN_NOT_ASSOCIATED_TO_ACCOUNT"
                    )
            if self._balances.get((from_account, token_id), 0) < amount:
                raise LedgerRejectedError(f"Insufficient balance in {from_account}",
                                          ledger_status="INSUFFICIENT_TOKEN_BALANCE")

            self._balances[(from_account, token_id)] -= amount
            self._balances[(to_account, token_id)] = self._balances.get((to_account, token_id), 0) + amount
            return LedgerReceipt(self._transaction_id(), "SUCCESS", amount)

    def associate(self, account_id: str, token_id: str, signer: str) -> LedgerReceipt:
        with self._lock:
            self.calls.append(("associate", {"account_id": account_id, "token_id": token_id}))
            self._check_failure("associate")
            self._token(token_id)
            if signer != account_id:
                raise LedgerRejectedError("Association must be signed by the account",
                                          ledger_status="INVALID_SIGNATURE")
            if (account_id, token_id) in self._associations:
                raise LedgerRejectedError(
                    f"Account {account_id} already associated with {token_id}",
                    ledger_status="TOKEN_ALREADY_ASSOCIATED_TO_ACCOUNT"
                )
            self._associations.add((account_id, token_id))
            self._balances.setdefault((account_id, token_id), 0)
            return LedgerReceipt(self._transaction_id(), "SUCCESS")

    def query_balance(self, account_id: str) -> AccountBalance:
        with self._lock:
            self._check_failure("query_balance")
            return AccountBalance(
                account_id=account_id,
                tokens={
                    token_id: balance
                    for (account, token_id), balance in self._balances.items()
                    if account == account_id
                },
            )

    def query_token_info(self, token_id: str) -> TokenInfo:
        with self._lock:
            self._check_failure("query_token_info")
            token = self._token(token_id)
            return TokenInfo(**vars(token))

    def operation_count(self, operation: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == operation)
