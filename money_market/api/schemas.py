"""
Pydantic schemas for API requests and response serialization
"""

from dataclasses import is_dataclass, fields
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..errors import InvalidInputError


def parse_decimal(value: Optional[str], name: str) -> Optional[Decimal]:
    """Decimal from a request string; None passes through"""
    if value is None:
        return None
    try:
        result = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidInputError(f"{name} must be a decimal number", {name: value})
    if not result.is_finite():
        raise InvalidInputError(f"{name} must be finite", {name: value})
    return result


def serialize(value: Any) -> Any:
    """JSON-ready form with Decimal kept exact as strings"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "to_dict"):
        return serialize(value.to_dict())
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: serialize(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {key: serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    return value


# User schemas
class CreateUserRequest(BaseModel):
    email: str
    full_name: str
    ledger_account_id: Optional[str] = None


class CreateManagerRequest(BaseModel):
    email: str
    full_name: str
    ledger_account_id: str = Field(..., description="Signing account for privileged ledger calls")


class LedgerAccountRequest(BaseModel):
    ledger_account_id: str


# Investment schemas
class BuyTokensRequest(BaseModel):
    amount: str = Field(..., description="Fiat amount as decimal string")
    payment_method: str = Field(..., description="mtn_momo, airtel_money or bank_transfer")
    payment_reference: Optional[str] = None


class RedeemRequest(BaseModel):
    investment_id: str
    withdrawal_method: str = "mtn_momo"


# Manager schemas
class InitiateRequest(BaseModel):
    request_type: str
    request_data: Dict[str, Any] = Field(default_factory=dict)


class TokenCreationRequest(BaseModel):
    name: Optional[str] = None
    symbol: Optional[str] = None
    decimals: Optional[int] = None
    initial_supply: Optional[int] = None

    def to_request_data(self) -> Dict[str, Any]:
        return {key: value for key, value in self.model_dump().items() if value is not None}


class RateChangeRequest(BaseModel):
    new_rate: str = Field(..., description="Annual rate percent as decimal string")


class RejectRequest(BaseModel):
    reason: Optional[str] = None
