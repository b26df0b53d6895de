"""
Manager endpoints: multi-signature requests and token information
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from .dependencies import FundSystem, get_fund_system, get_current_manager
from .schemas import (
    InitiateRequest, TokenCreationRequest, RateChangeRequest, RejectRequest,
    parse_decimal, serialize
)
from ..errors import LedgerRejectedError
from ..multisig import ExecutionResult, RequestType
from ..users import User


router = APIRouter()


def _request_data(request_data: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(request_data)
    if isinstance(data.get("new_rate"), str):
        data["new_rate"] = parse_decimal(data["new_rate"], "new_rate")
    return data


def _execution_response(result: ExecutionResult) -> Dict[str, Any]:
    message = "Request approved and executed" if result.executed else "Signature recorded"
    return {
        "message": message,
        "request": serialize(result.request),
        "result": serialize(result.details),
    }


@router.post("/requests", status_code=status.HTTP_201_CREATED)
def initiate_request(
    request: InitiateRequest,
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    """Initiate any multi-signature request"""
    created = system.multisig.initiate(request.request_type, _request_data(request.request_data), manager.id)
    return {"message": "Request created", "request": serialize(created)}


@router.post("/initiate-token-creation", status_code=status.HTTP_201_CREATED)
def initiate_token_creation(
    request: TokenCreationRequest,
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    created = system.multisig.initiate(
        RequestType.TOKEN_CREATION, request.to_request_data(), manager.id
    )
    return {
        "message": "Token creation request created. Waiting for second manager approval.",
        "request": serialize(created),
    }


@router.post("/update-interest-rate", status_code=status.HTTP_201_CREATED)
def initiate_rate_change(
    request: RateChangeRequest,
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    created = system.multisig.initiate(
        RequestType.RATE_CHANGE,
        {"new_rate": parse_decimal(request.new_rate, "new_rate")},
        manager.id
    )
    return {
        "message": "Rate change request created. Waiting for second manager approval.",
        "request": serialize(created),
    }


@router.post("/requests/{request_id}/approve")
def approve_request(
    request_id: str,
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    """Sign a pending request; the second signature executes it"""
    return _execution_response(system.multisig.approve(request_id, manager.id))


@router.post("/requests/{request_id}/reject")
def reject_request(
    request_id: str,
    request: Optional[RejectRequest] = None,
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    reason = request.reason if request else None
    rejected = system.multisig.reject(request_id, manager.id, reason)
    return {"message": "Request rejected", "request": serialize(rejected)}


@router.post("/requests/{request_id}/execute")
def execute_request(
    request_id: str,
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    """Retry execution of an approved request"""
    return _execution_response(system.multisig.execute(request_id))


@router.get("/pending-requests")
def list_pending_requests(
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    """Requests still waiting for this manager's signature"""
    pending = system.multisig.list_pending(excluding_manager_id=manager.id)
    return {"requests": serialize(pending), "count": len(pending)}


@router.get("/requests")
def list_requests(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    return serialize(system.multisig.list_all(status, page, limit))


@router.get("/requests/{request_id}")
def get_request(
    request_id: str,
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    return serialize(system.multisig.get_request(request_id))


@router.get("/token-info")
def get_token_info(
    manager: User = Depends(get_current_manager),
    system: FundSystem = Depends(get_fund_system)
):
    """Token record plus live ledger supply when the ledger answers"""
    token = system.tokens.require_active()
    ledger_info = None
    try:
        ledger_info = system.ledger.query_token_info(token.token_id)
    except LedgerRejectedError as e:
        system.multisig.logger.warning(f"Token info lookup failed: {e.message}")

    return {
        "token": serialize(token),
        "ledger": serialize(ledger_info),
        "rates": serialize(system.interest_engine.get_current_rates()),
    }
