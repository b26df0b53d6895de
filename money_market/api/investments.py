"""
Investor endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .dependencies import FundSystem, get_fund_system, get_current_user_id
from .schemas import BuyTokensRequest, RedeemRequest, parse_decimal, serialize


router = APIRouter()


@router.get("/rates")
async def get_rates(system: FundSystem = Depends(get_fund_system)):
    """Current annual, daily and APY figures"""
    return serialize(system.interest_engine.get_current_rates())


@router.get("/calculate-interest")
async def calculate_interest(
    amount: str = Query(..., description="Principal as decimal string"),
    days: Optional[int] = Query(None, ge=0),
    system: FundSystem = Depends(get_fund_system)
):
    """Projected returns for a principal"""
    engine = system.interest_engine
    principal = parse_decimal(amount, "amount")

    result = {
        "principal": principal,
        "rates": engine.get_current_rates(),
        "projections": engine.compute_projections(principal),
        "breakdown": engine.compute_daily_breakdown(principal),
    }
    if days is not None:
        result["calculation"] = engine.compute_for_fixed_period(principal, days)
    return serialize(result)


@router.post("/associate-token")
def associate_token(
    user_id: str = Depends(get_current_user_id),
    system: FundSystem = Depends(get_fund_system)
):
    user = system.investments.associate_token(user_id)
    return {
        "message": "Token associated successfully",
        "email": user.email,
        "ledger_account_id": user.ledger_account_id,
        "token_associated": user.token_associated,
    }


@router.post("/buy")
def buy_tokens(
    request: BuyTokensRequest,
    user_id: str = Depends(get_current_user_id),
    system: FundSystem = Depends(get_fund_system)
):
    """Invest: deposit fiat and receive fund tokens"""
    investment = system.investments.invest(
        owner_id=user_id,
        amount_fiat=parse_decimal(request.amount, "amount"),
        payment_method=request.payment_method,
        payment_reference=request.payment_reference
    )
    return {
        "message": "Investment successful",
        "investment": serialize(investment),
    }


@router.post("/redeem")
def redeem_tokens(
    request: RedeemRequest,
    user_id: str = Depends(get_current_user_id),
    system: FundSystem = Depends(get_fund_system)
):
    result = system.investments.redeem(user_id, request.investment_id, request.withdrawal_method)
    return {
        "message": "Redemption successful",
        "redemption": serialize(result),
    }


@router.get("/portfolio")
def get_portfolio(
    user_id: str = Depends(get_current_user_id),
    system: FundSystem = Depends(get_fund_system)
):
    return serialize(system.investments.get_portfolio(user_id))


@router.get("/transactions")
def list_transactions(
    type: Optional[str] = Query(None, description="deposit, withdrawal, interest_payment or fee"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    system: FundSystem = Depends(get_fund_system)
):
    """Transaction history, newest first"""
    return serialize(system.investments.list_transactions(user_id, type, page, limit))
