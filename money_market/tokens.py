"""
Token Registry Module

Holds the fund's singleton token record: created once by the multi-signature
token creation flow, never deleted, and carrying the supply the fund believes
it has minted.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import InvalidInputError, NotFoundError
from .storage import StorageInterface, StorageRecord


@dataclass
class Token(StorageRecord):
    token_id: str
    name: str
    symbol: str
    decimals: int
    treasury_account_id: str
    manager1_account_id: str
    manager2_account_id: str
    creation_transaction_id: str
    total_supply: int = 0  # smallest units
    is_active: bool = True
    version: int = 0

    @property
    def manager_keys(self) -> List[str]:
        return [self.manager1_account_id, self.manager2_account_id]


class TokenRegistry:
    """Persistence for the singleton Token record"""

    SINGLETON_ID = "fund_token"

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "tokens"

    def get(self) -> Optional[Token]:
        """The token record, active or not"""
        data = self.storage.load(self.table_name, self.SINGLETON_ID)
        return self._token_from_dict(data) if data else None

    def get_active(self) -> Optional[Token]:
        token = self.get()
        return token if token and token.is_active else None

    def exists(self) -> bool:
        return self.storage.exists(self.table_name, self.SINGLETON_ID)

    def require_active(self) -> Token:
        token = self.get_active()
        if not token:
            raise NotFoundError("Token not found. Please create token first.")
        return token

    def create(
        self,
        token_id: str,
        name: str,
        symbol: str,
        decimals: int,
        treasury_account_id: str,
        manager_account_ids: List[str],
        creation_transaction_id: str,
        initial_supply: int = 0
    ) -> Token:
        """
        Insert the singleton record. The fixed id makes a second creation
        fail with ConflictError at the storage layer.
        """
        now = datetime.now(timezone.utc)
        token = Token(
            id=self.SINGLETON_ID,
            created_at=now,
            updated_at=now,
            token_id=token_id,
            name=name,
            symbol=symbol,
            decimals=decimals,
            treasury_account_id=treasury_account_id,
            manager1_account_id=manager_account_ids[0],
            manager2_account_id=manager_account_ids[1],
            creation_transaction_id=creation_transaction_id,
            total_supply=initial_supply
        )
        self.storage.insert(self.table_name, token.id, token.to_dict())
        return token

    def adjust_supply(self, delta: int) -> Token:
        """Apply a mint (+) or burn (-) to the tracked supply"""
        token = self.require_active()
        new_supply = token.total_supply + delta
        if new_supply < 0:
            raise InvalidInputError("Tracked supply cannot go negative",
                                    {"supply": token.total_supply, "delta": delta})
        token.total_supply = new_supply
        token.updated_at = datetime.now(timezone.utc)
        token.version = self.storage.update_if_version(
            self.table_name, token.id, token.to_dict(), token.version
        )
        return token

    def deactivate(self) -> Token:
        token = self.get()
        if not token:
            raise NotFoundError("Token not found")
        token.is_active = False
        token.updated_at = datetime.now(timezone.utc)
        token.version = self.storage.update_if_version(
            self.table_name, token.id, token.to_dict(), token.version
        )
        return token

    def _token_from_dict(self, data: Dict[str, Any]) -> Token:
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return Token(**data)
