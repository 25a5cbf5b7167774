import logging

from errors import ValidationError
from schemas import PeriodRecord
from stores import BudgetStore

logger = logging.getLogger(__name__)

MIN_BUDGET_YEAR = 2020
MAX_BUDGET_YEAR = 3000


def validate_budget_month(month: int, year: int) -> None:
    if not isinstance(month, int) or not 1 <= month <= 12:
        raise ValidationError("month", f"month must be between 1 and 12, got {month!r}")
    if not isinstance(year, int) or not MIN_BUDGET_YEAR <= year <= MAX_BUDGET_YEAR:
        raise ValidationError(
            "year",
            f"year must be between {MIN_BUDGET_YEAR} and {MAX_BUDGET_YEAR}, got {year!r}",
        )


def previous_month(month: int, year: int) -> tuple[int, int]:
    if month == 1:
        return 12, year - 1
    return month - 1, year


def resolve_period(
    store: BudgetStore, user_id: str, profile_id: str, month: int, year: int
) -> PeriodRecord:
    """Return the period for (user, profile, month, year), creating it on first use.

    Repeated calls with the same key return the same record; the store keeps
    the key unique. Store failures propagate as ``StoreError``.
    """
    existing = store.find_period(user_id, profile_id, month, year)
    if existing:
        return existing
    candidate = PeriodRecord(
        user_id=user_id,
        profile_id=profile_id,
        budget_month=month,
        budget_year=year,
        is_active=True,
    )
    period = store.insert_period(candidate)
    if period.id != candidate.id:
        return period
    logger.info(
        f"period_created: user={user_id} profile={profile_id} "
        f"month={month} year={year} id={period.id}"
    )
    return period
