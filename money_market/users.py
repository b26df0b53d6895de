"""
User Directory Module

Investor and manager records with their ledger account references and the
manager capability check used by the multi-signature workflow.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, InvalidInputError, NotAuthorizedError, NotFoundError
from .storage import StorageInterface, StorageRecord


class UserRole(Enum):
    INVESTOR = "investor"
    MANAGER = "manager"
    ADMIN = "admin"


@dataclass
class User(StorageRecord):
    """Fund user; managers hold one of the two signing keys"""
    email: str
    full_name: str
    role: UserRole = UserRole.INVESTOR
    ledger_account_id: Optional[str] = None
    token_associated: bool = False
    is_active: bool = True

    @property
    def is_manager(self) -> bool:
        return self.role == UserRole.MANAGER and self.is_active

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['role'] = self.role.value
        return data


class UserDirectory:
    """Stores users and answers role questions"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "users"

    def create_user(
        self,
        email: str,
        full_name: str,
        role: UserRole = UserRole.INVESTOR,
        ledger_account_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> User:
        """Register a user; emails are unique (case-insensitive)"""
        if not email or "@" not in email:
            raise InvalidInputError("A valid email address is required")
        email = email.strip().lower()
        if self.get_by_email(email):
            raise ConflictError(f"User with email {email} already exists")

        now = datetime.now(timezone.utc)
        user = User(
            id=user_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            email=email,
            full_name=full_name,
            role=role,
            ledger_account_id=ledger_account_id
        )
        self.storage.insert(self.table_name, user.id, user.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.USER_CREATED, "user", user.id,
                {"email": email, "role": role.value}
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        data = self.storage.load(self.table_name, user_id)
        return self._user_from_dict(data) if data else None

    def get_by_email(self, email: str) -> Optional[User]:
        matches = self.storage.find(self.table_name, {"email": email.strip().lower()})
        return self._user_from_dict(matches[0]) if matches else None

    def list_users(self, role: Optional[UserRole] = None) -> List[User]:
        users = [self._user_from_dict(d) for d in self.storage.load_all(self.table_name)]
        if role:
            users = [u for u in users if u.role == role]
        return sorted(users, key=lambda u: u.created_at)

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if not user or not user.is_active:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def require_manager(self, user_id: str) -> User:
        """Resolve a manager identity or raise NotAuthorizedError"""
        user = self.get_user(user_id)
        if not user or not user.is_manager:
            raise NotAuthorizedError("Only managers can perform this operation",
                                     {"user_id": user_id})
        return user

    def set_ledger_account(self, user_id: str, ledger_account_id: str) -> User:
        """Link a ledger account to a user that has none yet"""
        if not ledger_account_id or not ledger_account_id.strip():
            raise InvalidInputError("ledger_account_id is required")
        user = self.require_user(user_id)
        if user.ledger_account_id:
            raise ConflictError("User already has a ledger account",
                                {"ledger_account_id": user.ledger_account_id})
        user.ledger_account_id = ledger_account_id.strip()
        return self._save(user)

    def mark_token_associated(self, user_id: str) -> User:
        user = self.require_user(user_id)
        user.token_associated = True
        return self._save(user)

    def _save(self, user: User) -> User:
        user.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, user.id, user.to_dict())
        return user

    def _user_from_dict(self, data: Dict[str, Any]) -> User:
        return User(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            email=data['email'],
            full_name=data['full_name'],
            role=UserRole(data['role']),
            ledger_account_id=data.get('ledger_account_id'),
            token_associated=data.get('token_associated', False),
            is_active=data.get('is_active', True)
        )
