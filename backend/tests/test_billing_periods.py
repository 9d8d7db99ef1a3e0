from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from app.domain import (
    AttributedDomainState,
    AttributionStatus,
    BillingCycle,
    MatchType,
    PeriodStatus,
)
from app.repositories import AttributionRepository
from app.services.billing_periods import (
    MAX_ROLLING_PERIODS,
    BillingService,
    calculate_billing_periods,
    current_billing_period,
    estimate_auto_bill,
    parse_billing_cycle,
)


def test_monthly_period_becomes_overdue_after_review_deadline():
    """Verify the January period is overdue once its review deadline has passed."""
    periods = calculate_billing_periods(date(2024, 1, 1), "monthly", 7, today=date(2024, 2, 10))

    january = periods[0]
    assert january.period_name == "January 2024"
    assert january.start_date == date(2024, 1, 1)
    assert january.end_date == date(2024, 1, 31)
    assert january.review_deadline == date(2024, 2, 7)
    assert january.status == PeriodStatus.OVERDUE
    assert periods[1].end_date == date(2024, 2, 29)
    assert periods[1].status == PeriodStatus.UPCOMING
    assert len(periods) == 2


def test_monthly_period_open_during_review_window():
    """Verify the January period is open until its review deadline."""
    periods = calculate_billing_periods(date(2024, 1, 1), BillingCycle.MONTHLY, 7, today=date(2024, 2, 5))

    assert periods[0].status == PeriodStatus.OPEN
    assert current_billing_period(periods) == periods[0]


def test_review_deadline_day_is_still_open():
    """Verify the deadline itself is inclusive."""
    periods = calculate_billing_periods(date(2024, 1, 1), "monthly", 7, today=date(2024, 2, 7))

    assert periods[0].status == PeriodStatus.OPEN


def test_first_period_is_partial():
    """Verify a mid-month contract start gives a short first period."""
    periods = calculate_billing_periods(date(2024, 1, 15), "monthly", 7, today=date(2024, 3, 2))

    assert [(period.start_date, period.end_date) for period in periods] == [
        (date(2024, 1, 15), date(2024, 1, 31)),
        (date(2024, 2, 1), date(2024, 2, 29)),
        (date(2024, 3, 1), date(2024, 3, 31)),
    ]
    assert [period.period_number for period in periods] == [1, 2, 3]


def test_quarterly_periods_follow_calendar_quarters():
    """Verify quarterly periods end on calendar quarter boundaries."""
    periods = calculate_billing_periods(date(2024, 2, 10), "quarterly", 14, today=date(2024, 5, 20))

    assert [(period.period_name, period.start_date, period.end_date) for period in periods] == [
        ("Q1 2024", date(2024, 2, 10), date(2024, 3, 31)),
        ("Q2 2024", date(2024, 4, 1), date(2024, 6, 30)),
    ]
    assert periods[0].review_deadline == date(2024, 4, 14)
    assert periods[0].status == PeriodStatus.OVERDUE
    assert periods[1].status == PeriodStatus.UPCOMING


def test_rolling_periods_are_28_days():
    """Verify 28-day cycles start the day after the previous one ends."""
    periods = calculate_billing_periods(date(2024, 1, 1), "28_day", 7, today=date(2024, 2, 1))

    assert [(period.period_name, period.start_date, period.end_date) for period in periods] == [
        ("Cycle 1", date(2024, 1, 1), date(2024, 1, 28)),
        ("Cycle 2", date(2024, 1, 29), date(2024, 2, 25)),
    ]


def test_rolling_periods_are_capped():
    """Verify an old rolling contract stops at the period cap."""
    periods = calculate_billing_periods(date(2010, 1, 1), "28_day", 7, today=date(2024, 1, 1))

    assert len(periods) == MAX_ROLLING_PERIODS
    assert periods[-1].period_name == f"Cycle {MAX_ROLLING_PERIODS}"


def test_contract_starting_in_future_has_no_periods():
    """Verify no periods exist before the contract starts."""
    assert calculate_billing_periods(date(2024, 6, 1), "monthly", 7, today=date(2024, 5, 1)) == []


def test_current_period_falls_back_to_most_recent():
    """Verify the latest period is current when none is open."""
    periods = calculate_billing_periods(date(2024, 1, 1), "monthly", 7, today=date(2024, 2, 10))

    assert current_billing_period(periods) == periods[-1]
    assert current_billing_period([]) is None


def test_current_period_prefers_last_open_one():
    """Verify the most recent open period wins over older open ones."""
    periods = calculate_billing_periods(date(2024, 1, 1), "monthly", 45, today=date(2024, 3, 5))

    assert [period.status for period in periods] == [
        PeriodStatus.OPEN,
        PeriodStatus.OPEN,
        PeriodStatus.UPCOMING,
    ]
    assert current_billing_period(periods) == periods[1]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, BillingCycle.MONTHLY),
        ("Monthly", BillingCycle.MONTHLY),
        ("quarterly", BillingCycle.QUARTERLY),
        ("28-day", BillingCycle.TWENTY_EIGHT_DAY),
        ("rolling", BillingCycle.TWENTY_EIGHT_DAY),
    ],
)
def test_parse_billing_cycle(raw, expected):
    """Verify stored billing cycle strings are normalized."""
    assert parse_billing_cycle(raw) == expected


def test_parse_billing_cycle_rejects_unknown():
    """Verify unknown cycles raise."""
    with pytest.raises(ValueError):
        parse_billing_cycle("weekly")


def _state(name: str, status: AttributionStatus, first_event: datetime | None) -> AttributedDomainState:
    return AttributedDomainState(
        domain=name,
        status=status,
        match_type=MatchType.SOFT_MATCH,
        first_event_at=first_event,
    )


def test_estimate_auto_bill_counts_billable_domains_in_period():
    """Verify overdue periods bill attributed and promoted domains first seen in the period."""
    january = calculate_billing_periods(date(2024, 1, 1), "monthly", 7, today=date(2024, 2, 10))[0]
    domains = [
        _state("a.com", AttributionStatus.ATTRIBUTED, datetime(2024, 1, 10, tzinfo=timezone.utc)),
        _state("b.com", AttributionStatus.CLIENT_PROMOTED, datetime(2024, 1, 31, 23, tzinfo=timezone.utc)),
        _state("c.com", AttributionStatus.UNATTRIBUTED, datetime(2024, 1, 12, tzinfo=timezone.utc)),
        _state("d.com", AttributionStatus.ATTRIBUTED, datetime(2024, 2, 2, tzinfo=timezone.utc)),
        _state("e.com", AttributionStatus.ATTRIBUTED, None),
    ]

    estimate = estimate_auto_bill(january, domains, estimated_acv=10000, rev_share_rate=0.1)

    assert estimate is not None
    assert estimate.period_name == "January 2024"
    assert estimate.billable_domains == 2
    assert estimate.estimated_revenue == 20000.0
    assert estimate.amount_owed == 2000.0


def test_estimate_auto_bill_skips_open_periods():
    """Verify only overdue periods are auto-billed."""
    january = calculate_billing_periods(date(2024, 1, 1), "monthly", 7, today=date(2024, 2, 5))[0]

    assert estimate_auto_bill(january, [], estimated_acv=10000, rev_share_rate=0.1) is None


def test_billing_service_uses_client_configuration(session, client_config):
    """Verify the service reads cycle, start and review window from the client config."""
    repo = AttributionRepository(session)
    record = repo.create_domain(
        client_config.id,
        AttributedDomainState(
            domain="acme.com",
            match_type=MatchType.HARD_MATCH,
            first_event_at=datetime(2024, 1, 10, tzinfo=timezone.utc),
            is_within_window=True,
        ),
    )
    record.status = AttributionStatus.ATTRIBUTED.value
    session.commit()
    service = BillingService(repo)

    periods = service.periods_for_client(client_config.id, today=date(2024, 2, 10))
    estimates = service.auto_bill_estimates(client_config.id, today=date(2024, 2, 10))

    assert [period.status for period in periods] == [PeriodStatus.OVERDUE, PeriodStatus.UPCOMING]
    assert service.current_period_for_client(client_config.id, today=date(2024, 2, 10)) == periods[-1]
    assert set(estimates) == {1}
    assert estimates[1].billable_domains == 1
    assert estimates[1].amount_owed == 1000.0


def test_billing_service_without_contract_start(session, client_config):
    """Verify clients without a contract start have no periods."""
    client_config.contract_start_date = None
    session.commit()
    service = BillingService(AttributionRepository(session))

    assert service.periods_for_client(client_config.id, today=date(2024, 2, 10)) == []
    assert service.current_period_for_client(client_config.id, today=date(2024, 2, 10)) is None


def test_billing_service_unknown_client(session):
    """Verify an unknown client config raises LookupError."""
    with pytest.raises(LookupError):
        BillingService(AttributionRepository(session)).periods_for_client("missing", today=date(2024, 2, 10))
