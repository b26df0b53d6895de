"""
System wiring and request dependencies
"""

from decimal import Decimal
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from ..audit import AuditTrail
from ..config import FundConfig, get_config
from ..interest import InterestEngine
from ..investments import InvestmentLedger
from ..ledger_gateway import LedgerGateway, HttpLedgerGateway, InMemoryLedgerGateway
from ..multisig import MultiSigWorkflow
from ..storage import StorageInterface, InMemoryStorage, SQLiteStorage
from ..tokens import TokenRegistry
from ..users import User, UserDirectory, UserRole


class FundSystem:
    """Money market backend with all components initialized"""

    def __init__(
        self,
        config: Optional[FundConfig] = None,
        storage: Optional[StorageInterface] = None,
        ledger: Optional[LedgerGateway] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        if storage is not None:
            self.storage = storage
        elif self.config.use_sqlite:
            self.storage = SQLiteStorage(self.config.sqlite_path)
        else:
            self.storage = InMemoryStorage()

        self.ledger = ledger or self._create_ledger_gateway()

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.interest_engine = InterestEngine(
            Decimal(self.config.annual_interest_rate), self.storage, self.audit_trail
        )
        self.users = UserDirectory(self.storage, self.audit_trail)
        self.tokens = TokenRegistry(self.storage)
        self.multisig = MultiSigWorkflow(
            self.storage, self.users, self.tokens, self.ledger,
            self.interest_engine, self.audit_trail, self.config
        )
        self.investments = InvestmentLedger(
            self.storage, self.users, self.tokens, self.ledger,
            self.interest_engine, self.audit_trail, self.config
        )
        self._seed_managers()

    def _create_ledger_gateway(self) -> LedgerGateway:
        """HTTP gateway when a service URL is configured, simulated ledger otherwise"""
        if not self.config.ledger_gateway_url:
            return InMemoryLedgerGateway(self.config.treasury_account_id)

        return HttpLedgerGateway(
            base_url=self.config.ledger_gateway_url,
            timeout=self.config.ledger_gateway_timeout,
            api_key=self.config.ledger_gateway_api_key or None
        )

    def _seed_managers(self) -> None:
        """Register configured managers that do not exist yet"""
        for entry in self.config.initial_managers:
            email = entry.get("email", "")
            if email and self.users.get_by_email(email):
                continue
            self.users.create_user(
                email=email,
                full_name=entry.get("full_name", email),
                role=UserRole.MANAGER,
                ledger_account_id=entry.get("ledger_account_id")
            )

    def close(self) -> None:
        self.ledger.close()
        self.storage.close()


def get_fund_system(request: Request) -> FundSystem:
    return request.app.state.system


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, as established by the fronting auth layer"""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header"
        )
    return x_user_id


def get_current_manager(
    user_id: str = Depends(get_current_user_id),
    system: FundSystem = Depends(get_fund_system)
) -> User:
    return system.users.require_manager(user_id)
