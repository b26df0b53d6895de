"""
Interest Engine Module

Daily-compounded interest for the money market fund: valuation of an
investment between two instants, fixed-period projections, portfolio
aggregation, APY and break-even figures, and manager rate changes.

All arithmetic uses Decimal. Compounding always runs on unrounded
intermediate values; rounding is applied to outputs only.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union
import math
import threading

from .audit import AuditTrail, AuditEventType
from .errors import InvalidInputError, InvalidRangeError, InvalidRateError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, parse_datetime


Number = Union[Decimal, int, float]

PERIODS_PER_YEAR = 365
ONE_DAY = timedelta(days=1)
CENT = Decimal('0.01')
HUNDRED = Decimal('100')
PROJECTION_HORIZONS = {
    "one_week": 7,
    "one_month": 30,
    "three_months": 90,
    "six_months": 180,
    "one_year": 365,
}


def to_decimal(value: Any, name: str) -> Decimal:
    """Strict numeric conversion; strings, booleans and non-finite values are refused"""
    if isinstance(value, bool):
        raise InvalidInputError(f"{name} must be a number, got a boolean")
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise InvalidInputError(f"{name} must be finite")
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidInputError(f"{name} must be finite")
        return Decimal(str(value))
    raise InvalidInputError(f"{name} must be a number, got {type(value).__name__}")


def to_day_count(value: Any, name: str = "days") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{name} must be an integer")
    if value < 0:
        raise InvalidInputError(f"{name} cannot be negative")
    return value


def _as_utc(value: Any, name: str) -> datetime:
    if not isinstance(value, datetime):
        raise InvalidInputError(f"{name} must be a datetime")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _round_places(value: Decimal, places: int) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class InterestCalculation:
    """Result of valuing a principal over a number of elapsed days"""
    principal: Decimal
    interest: Decimal
    total_value: Decimal
    days_elapsed: int
    annual_rate_percent: Decimal
    daily_rate_percent: Decimal
    effective_rate_percent: Optional[Decimal]  # None when no day has elapsed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": self.principal,
            "interest": self.interest,
            "total_value": self.total_value,
            "days_elapsed": self.days_elapsed,
            "annual_rate_percent": self.annual_rate_percent,
            "daily_rate_percent": self.daily_rate_percent,
            "effective_rate_percent": self.effective_rate_percent,
        }


@dataclass
class PortfolioEntry:
    """One position to value inside ``compute_portfolio``"""
    identity: str
    amount: Number
    start_time: datetime
    rate_percent: Optional[Number] = None  # value at this rate instead of the live one


@dataclass
class InterestRateConfig:
    """Persisted fund rate state"""
    annual_rate_percent: Decimal
    updated_by: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": InterestEngine.RATE_CONFIG_ID,
            "annual_rate_percent": str(self.annual_rate_percent),
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InterestRateConfig':
        return cls(
            annual_rate_percent=Decimal(data['annual_rate_percent']),
            updated_by=data.get('updated_by'),
            updated_at=parse_datetime(data['updated_at']),
            version=data.get('version', 0),
        )


class InterestEngine:
    """
    Compound interest calculator for the fund.

    The rate is held in an explicit InterestRateConfig. When a storage
    backend is supplied the engine loads the persisted rate at construction
    (seeding it with ``annual_rate_percent`` the first time) and writes every
    change back before it takes effect, so restarts and sibling instances
    see the same rate.
    """

    RATE_CONFIG_TABLE = "interest_rate_config"
    RATE_CONFIG_ID = "current"

    def __init__(
        self,
        annual_rate_percent: Number = Decimal('8.5'),
        storage: Optional[StorageInterface] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.periods_per_year = PERIODS_PER_YEAR
        self.logger = get_logger("money_market.interest")
        self._lock = threading.Lock()

        initial = self.validate_rate(annual_rate_percent)
        self._config = InterestRateConfig(annual_rate_percent=initial)
        if storage is not None:
            self._config = self._load_or_seed(self._config)
        self._apply(self._config.annual_rate_percent)

    # Rate state

    def _load_or_seed(self, default: InterestRateConfig) -> InterestRateConfig:
        data = self.storage.load(self.RATE_CONFIG_TABLE, self.RATE_CONFIG_ID)
        if data:
            return InterestRateConfig.from_dict(data)
        self.storage.save(self.RATE_CONFIG_TABLE, self.RATE_CONFIG_ID, default.to_dict())
        return default

    def _apply(self, annual_rate_percent: Decimal) -> None:
        annual_rate = annual_rate_percent / HUNDRED
        self.annual_rate = annual_rate
        self.daily_rate = annual_rate / self.periods_per_year

    def _rates(self):
        with self._lock:
            return self.annual_rate, self.daily_rate

    @staticmethod
    def validate_rate(rate_percent: Any) -> Decimal:
        try:
            rate = to_decimal(rate_percent, "rate")
        except InvalidInputError as e:
            raise InvalidRateError(e.message) from e
        if rate < 0 or rate > HUNDRED:
            raise InvalidRateError(
                "Interest rate must be between 0 and 100",
                {"rate": str(rate)}
            )
        return rate

    def refresh_rate(self) -> Decimal:
        """Reload the persisted rate (picks up changes made by other instances)"""
        if self.storage is None:
            return self.annual_rate * HUNDRED
        data = self.storage.load(self.RATE_CONFIG_TABLE, self.RATE_CONFIG_ID)
        if data:
            with self._lock:
                self._config = InterestRateConfig.from_dict(data)
                self._apply(self._config.annual_rate_percent)
        return self._config.annual_rate_percent

    @property
    def annual_rate_percent(self) -> Decimal:
        with self._lock:
            return self._config.annual_rate_percent

    def update_rate(self, new_rate_percent: Any, updated_by: Optional[str] = None) -> Dict[str, Any]:
        """
        Change the annual rate (percent). Takes effect for every subsequent
        calculation; figures already recorded on closed investments are not
        touched.

        Raises:
            InvalidRateError: rate is not a number in [0, 100]; the previous
                rate stays in force.
        """
        rate = self.validate_rate(new_rate_percent)

        with self._lock:
            previous = self._config.annual_rate_percent
            new_config = InterestRateConfig(
                annual_rate_percent=rate,
                updated_by=updated_by,
                version=self._config.version + 1
            )
            if self.storage is not None:
                with self.storage.atomic():
                    self.storage.save(self.RATE_CONFIG_TABLE, self.RATE_CONFIG_ID,
                                      new_config.to_dict())
            self._config = new_config
            self._apply(rate)

        log_action(
            self.logger, "info", f"Interest rate updated to {rate}%",
            user_id=updated_by, action="update_rate", resource="interest_rate",
            extra={"previous_rate": str(previous), "new_rate": str(rate)}
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.RATE_CHANGED, "interest_rate", self.RATE_CONFIG_ID,
                {"previous_rate_percent": previous, "new_rate_percent": rate},
                updated_by
            )

        rates = self.get_current_rates()
        return {
            "previous_rate_percent": _round_places(previous, 2),
            "annual_rate_percent": rates["annual_rate_percent"],
            "daily_rate_percent": rates["daily_rate_percent"],
            "apy_percent": rates["apy_percent"],
        }

    # Calculations

    def _calculate(self, principal: Decimal, days: int, annual: Decimal, daily: Decimal) -> InterestCalculation:
        total_value = principal * (1 + daily) ** days
        interest = total_value - principal

        effective = None
        if days > 0:
            years = Decimal(days) / self.periods_per_year
            effective = _round_places((total_value / principal - 1) / years * HUNDRED, 2)

        return InterestCalculation(
            principal=round_money(principal),
            interest=round_money(interest),
            total_value=round_money(total_value),
            days_elapsed=days,
            annual_rate_percent=_round_places(annual * HUNDRED, 2),
            daily_rate_percent=_round_places(daily * HUNDRED, 4),
            effective_rate_percent=effective
        )

    def _zeroed(self, annual: Decimal, daily: Decimal) -> InterestCalculation:
        zero = Decimal('0.00')
        return InterestCalculation(
            principal=zero,
            interest=zero,
            total_value=zero,
            days_elapsed=0,
            annual_rate_percent=_round_places(annual * HUNDRED, 2),
            daily_rate_percent=_round_places(daily * HUNDRED, 4),
            effective_rate_percent=None
        )

    def _resolve_rates(self, rate_percent: Optional[Any]):
        if rate_percent is None:
            return self._rates()
        annual = self.validate_rate(rate_percent) / HUNDRED
        return annual, annual / self.periods_per_year

    @staticmethod
    def _principal(value: Any) -> Decimal:
        principal = to_decimal(value, "principal")
        if principal < 0:
            raise InvalidInputError("Principal cannot be negative", {"principal": str(principal)})
        return principal

    def compute_value(
        self,
        principal: Number,
        start_time: datetime,
        end_time: Optional[datetime] = None,
        rate_percent: Optional[Number] = None
    ) -> InterestCalculation:
        """
        Value a principal invested at start_time, as of end_time (default now).

        Args:
            principal: Amount invested (fiat)
            start_time: When the investment started
            end_time: Valuation instant, defaults to now
            rate_percent: Annual rate to value at instead of the live rate

        Raises:
            InvalidRangeError: end_time is before start_time
            InvalidInputError: malformed or negative principal
        """
        principal = self._principal(principal)
        annual, daily = self._resolve_rates(rate_percent)
        if principal == 0:
            return self._zeroed(annual, daily)

        start = _as_utc(start_time, "start_time")
        end = _as_utc(end_time, "end_time") if end_time is not None else datetime.now(timezone.utc)
        if end < start:
            raise InvalidRangeError(
                "End time cannot be before start time",
                {"start_time": start.isoformat(), "end_time": end.isoformat()}
            )

        days = (end - start) // ONE_DAY
        return self._calculate(principal, days, annual, daily)

    def compute_for_fixed_period(self, principal: Number, days: int,
                                 rate_percent: Optional[Number] = None) -> InterestCalculation:
        """Value a principal after a given number of days (no dates involved)"""
        principal = self._principal(principal)
        days = to_day_count(days)
        annual, daily = self._resolve_rates(rate_percent)
        if principal == 0:
            return self._zeroed(annual, daily)
        return self._calculate(principal, days, annual, daily)

    def compute_projection(self, principal: Number, days_ahead: int) -> InterestCalculation:
        """Projected value if invested now and held for days_ahead days"""
        days_ahead = to_day_count(days_ahead, "days_ahead")
        start = datetime.now(timezone.utc)
        return self.compute_value(principal, start, start + timedelta(days=days_ahead))

    def compute_projections(self, principal: Number) -> Dict[str, InterestCalculation]:
        """Projections over the standard display horizons (one week to one year)"""
        return {
            label: self.compute_for_fixed_period(principal, days)
            for label, days in PROJECTION_HORIZONS.items()
        }

    def compute_daily_breakdown(self, principal: Number) -> Dict[str, Decimal]:
        """
        What a principal earns per day, with 30-day and 365-day linear
        extrapolations. These are simple-interest display figures, not
        compounded totals.
        """
        principal = self._principal(principal)
        annual, daily = self._rates()
        daily_interest = principal * daily

        return {
            "principal": round_money(principal),
            "daily_interest": round_money(daily_interest),
            "monthly_interest": round_money(daily_interest * 30),
            "yearly_interest": round_money(daily_interest * 365),
            "daily_rate_percent": _round_places(daily * HUNDRED, 4),
            "annual_rate_percent": _round_places(annual * HUNDRED, 2),
        }

    def compute_portfolio(self, investments: Sequence[PortfolioEntry],
                          end_time: Optional[datetime] = None) -> Dict[str, Any]:
        """Aggregate compute_value over several positions"""
        end = end_time or datetime.now(timezone.utc)
        total_principal = Decimal('0')
        total_interest = Decimal('0')
        total_value = Decimal('0')
        details: List[Dict[str, Any]] = []

        for entry in investments:
            calculation = self.compute_value(entry.amount, entry.start_time, end,
                                             rate_percent=entry.rate_percent)
            total_principal += calculation.principal
            total_interest += calculation.interest
            total_value += calculation.total_value
            details.append({"investment_id": entry.identity, **calculation.to_dict()})

        return {
            "total_principal": round_money(total_principal),
            "total_interest": round_money(total_interest),
            "total_value": round_money(total_value),
            "number_of_investments": len(details),
            "annual_rate_percent": _round_places(self.annual_rate_percent, 2),
            "investments": details,
        }

    def _apy(self, daily: Decimal) -> Decimal:
        return (1 + daily) ** self.periods_per_year - 1

    def compute_apy(self) -> Dict[str, Any]:
        """Annual percentage yield implied by daily compounding"""
        annual, daily = self._rates()
        return {
            "annual_rate_percent": _round_places(annual * HUNDRED, 2),
            "apy_percent": _round_places(self._apy(daily) * HUNDRED, 2),
            "compounding_frequency": "daily",
            "periods_per_year": self.periods_per_year,
        }

    def get_current_rates(self) -> Dict[str, Any]:
        annual, daily = self._rates()
        return {
            "annual_rate_percent": _round_places(annual * HUNDRED, 2),
            "daily_rate_percent": _round_places(daily * HUNDRED, 4),
            "apy_percent": _round_places(self._apy(daily) * HUNDRED, 2),
            "compounding_frequency": "daily",
        }

    def compute_break_even(self, principal: Number, fee: Number) -> Dict[str, Any]:
        """
        Days of compounding needed for interest to cover a flat fee:
        ceil(ln(1 + fee/principal) / ln(1 + daily_rate)).
        """
        fee = to_decimal(fee, "fee")
        principal = self._principal(principal)
        if fee <= 0:
            return {
                "principal": round_money(principal),
                "fee": round_money(fee),
                "days": 0,
                "months": Decimal('0.0'),
                "message": "No fees to break even",
            }
        if principal == 0:
            raise InvalidInputError("Principal must be positive to break even on a fee")

        _, daily = self._rates()
        if daily == 0:
            return {
                "principal": round_money(principal),
                "fee": round_money(fee),
                "days": None,
                "months": None,
                "message": "Fee cannot be recovered at a zero interest rate",
            }

        ratio = (1 + fee / principal).ln() / (1 + daily).ln()
        days = int(ratio.to_integral_value(rounding=ROUND_CEILING))
        return {
            "principal": round_money(principal),
            "fee": round_money(fee),
            "days": days,
            "months": _round_places(Decimal(days) / 30, 1),
        }
