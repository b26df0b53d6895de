"""
User registration endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import FundSystem, get_fund_system, get_current_user_id, get_current_manager
from .schemas import CreateUserRequest, CreateManagerRequest, LedgerAccountRequest, serialize
from ..logging_config import get_logger, log_action
from ..users import User, UserRole


logger = get_logger("money_market.api")
router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_user(
    request: CreateUserRequest,
    system: FundSystem = Depends(get_fund_system)
):
    """Self-registration; always creates an investor"""
    user = system.users.create_user(
        email=request.email,
        full_name=request.full_name,
        role=UserRole.INVESTOR,
        ledger_account_id=request.ledger_account_id
    )
    return {
        "user_id": user.id,
        "message": "User created successfully",
        "user": serialize(user),
    }


@router.post("/managers", status_code=status.HTTP_201_CREATED)
def create_manager(
    request: CreateManagerRequest,
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    """Register another manager; only an existing manager may do this"""
    user = system.users.create_user(
        email=request.email,
        full_name=request.full_name,
        role=UserRole.MANAGER,
        ledger_account_id=request.ledger_account_id
    )
    log_action(logger, "info", "Manager registered", user_id=manager.id,
               action="create_manager", resource=f"user:{user.id}")
    return {
        "user_id": user.id,
        "message": "Manager created successfully",
        "user": serialize(user),
    }


@router.get("/me")
def get_me(
    user_id: str = Depends(get_current_user_id),
    system: FundSystem = Depends(get_fund_system)
):
    user = system.users.require_user(user_id)
    return serialize(user)


@router.post("/me/ledger-account")
def link_ledger_account(
    request: LedgerAccountRequest,
    user_id: str = Depends(get_current_user_id),
    system: FundSystem = Depends(get_fund_system)
):
    """Attach a ledger account to a user registered without one"""
    user = system.users.set_ledger_account(user_id, request.ledger_account_id)
    return {
        "message": "Ledger account linked",
        "user": serialize(user),
    }
