"""Reconciliation period calculation.

Periods run from the contract start to today. The first period is partial
(contract start to the end of that calendar month/quarter, or 28 days for
rolling cycles) and each period's review deadline falls ``review_window_days``
after its end.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date, timedelta

from dateutil.relativedelta import relativedelta
from loguru import logger

from app.domain import (
    BILLABLE_STATUSES,
    AttributedDomainState,
    AutoBillEstimate,
    BillingCycle,
    BillingPeriod,
    PeriodStatus,
    ensure_utc,
)
from app.models import ClientConfig
from app.repositories.attribution_repository import (
    AttributionRepository,
    domain_state_from_record,
)

MAX_ROLLING_PERIODS = 100
ROLLING_PERIOD_DAYS = 28


def parse_billing_cycle(value: str | BillingCycle | None) -> BillingCycle:
    if isinstance(value, BillingCycle):
        return value
    normalized = (value or BillingCycle.MONTHLY.value).strip().lower().replace("-", "_")
    if normalized in {"28day", "rolling", "28_days"}:
        normalized = BillingCycle.TWENTY_EIGHT_DAY.value
    return BillingCycle(normalized)


def _period_end(start: date, cycle: BillingCycle) -> date:
    if cycle == BillingCycle.TWENTY_EIGHT_DAY:
        return start + timedelta(days=ROLLING_PERIOD_DAYS - 1)
    if cycle == BillingCycle.QUARTERLY:
        quarter_end_month = ((start.month - 1) // 3 + 1) * 3
        return date(start.year, quarter_end_month, 1) + relativedelta(day=31)
    return start + relativedelta(day=31)


def _period_name(start: date, cycle: BillingCycle, number: int) -> str:
    if cycle == BillingCycle.TWENTY_EIGHT_DAY:
        return f"Cycle {number}"
    if cycle == BillingCycle.QUARTERLY:
        return f"Q{(start.month - 1) // 3 + 1} {start.year}"
    return start.strftime("%B %Y")


def period_status(end_date: date, review_deadline: date, today: date) -> PeriodStatus:
    if end_date > today:
        return PeriodStatus.UPCOMING
    if today <= review_deadline:
        return PeriodStatus.OPEN
    return PeriodStatus.OVERDUE


def calculate_billing_periods(
    contract_start: date,
    cycle: BillingCycle | str,
    review_window_days: int,
    *,
    today: date,
) -> list[BillingPeriod]:
    cycle = parse_billing_cycle(cycle)
    periods: list[BillingPeriod] = []
    start = contract_start
    number = 1
    # The period containing ``today`` is the last one generated.
    while start <= today:
        end = _period_end(start, cycle)
        deadline = end + timedelta(days=review_window_days)
        periods.append(
            BillingPeriod(
                period_number=number,
                period_name=_period_name(start, cycle, number),
                start_date=start,
                end_date=end,
                review_deadline=deadline,
                status=period_status(end, deadline, today),
            )
        )
        if cycle == BillingCycle.TWENTY_EIGHT_DAY and number >= MAX_ROLLING_PERIODS:
            logger.warning(
                "Stopped rolling periods for contract starting {} at {} cycles",
                contract_start,
                MAX_ROLLING_PERIODS,
            )
            break
        start = end + timedelta(days=1)
        number += 1
    return periods


def current_billing_period(periods: Sequence[BillingPeriod]) -> BillingPeriod | None:
    """Last OPEN period, or the most recent one when none is open."""

    for period in reversed(periods):
        if period.status == PeriodStatus.OPEN:
            return period
    return periods[-1] if periods else None


def estimate_auto_bill(
    period: BillingPeriod,
    domains: Iterable[AttributedDomainState],
    *,
    estimated_acv: float,
    rev_share_rate: float,
) -> AutoBillEstimate | None:
    """Fallback invoice for an overdue period nobody reconciled."""

    if period.status != PeriodStatus.OVERDUE:
        return None
    billable = 0
    for state in domains:
        if state.status not in BILLABLE_STATUSES:
            continue
        first_event = ensure_utc(state.first_event_at)
        if first_event is None:
            continue
        if period.start_date <= first_event.date() <= period.end_date:
            billable += 1
    estimated_revenue = round(billable * float(estimated_acv), 2)
    return AutoBillEstimate(
        period_name=period.period_name,
        billable_domains=billable,
        estimated_revenue=estimated_revenue,
        amount_owed=round(estimated_revenue * float(rev_share_rate), 2),
    )


class BillingService:
    def __init__(self, repo: AttributionRepository) -> None:
        self._repo = repo

    def _config(self, client_config_id: str) -> ClientConfig:
        config = self._repo.get_client_config(client_config_id)
        if config is None:
            raise LookupError(f"Unknown client config {client_config_id!r}")
        return config

    def periods_for_client(self, client_config_id: str, *, today: date) -> list[BillingPeriod]:
        config = self._config(client_config_id)
        if config.contract_start_date is None:
            return []
        return calculate_billing_periods(
            config.contract_start_date,
            config.billing_cycle,
            config.review_window_days,
            today=today,
        )

    def current_period_for_client(self, client_config_id: str, *, today: date) -> BillingPeriod | None:
        return current_billing_period(self.periods_for_client(client_config_id, today=today))

    def auto_bill_estimates(
        self, client_config_id: str, *, today: date
    ) -> dict[int, AutoBillEstimate]:
        config = self._config(client_config_id)
        periods = self.periods_for_client(client_config_id, today=today)
        overdue = [period for period in periods if period.status == PeriodStatus.OVERDUE]
        if not overdue:
            return {}
        states = [
            domain_state_from_record(record)
            for record in self._repo.list_domains(client_config_id, statuses=BILLABLE_STATUSES)
        ]
        estimates: dict[int, AutoBillEstimate] = {}
        for period in overdue:
            estimate = estimate_auto_bill(
                period,
                states,
                estimated_acv=float(config.estimated_acv),
                rev_share_rate=float(config.rev_share_rate),
            )
            if estimate is not None:
                estimates[period.period_number] = estimate
        return estimates
