"""Budget threshold alerts.

An alert is raised when a budget's spent amount enters the threshold window
(``threshold <= spent < limit``) or reaches the limit (``spent >= limit``).
At most one *unread* alert of each type exists per budget: a new alert of a
type is only inserted when the previous one of that type has been read.

Alert emission is a best-effort side effect of a spend change. Failures are
logged and reported through :class:`AlertOutcome`; they never propagate into
the expense or budget write that triggered the evaluation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import AlertType, Budget, BudgetAlert


logger = logging.getLogger(__name__)


@dataclass
class AlertOutcome:
    created: list[BudgetAlert] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def format_cents(cents: int) -> str:
    symbol = get_settings().currency_symbol
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{symbol}{whole}.{frac:02d}"


def spent_percentage(spent_cents: int, limit_cents: int) -> float:
    if limit_cents <= 0:
        return 0.0
    return spent_cents / limit_cents * 100


def alert_types_due(
    spent_cents: int, limit_cents: int, threshold_percentage: int
) -> list[AlertType]:
    """Alert types whose condition holds for the given spend.

    The two checks are independent, but the threshold window excludes the
    limit, so a jump straight past the limit yields only ``EXCEEDED``.
    """
    due: list[AlertType] = []
    # spent >= limit * pct / 100, kept in integers.
    reached_threshold = spent_cents * 100 >= limit_cents * threshold_percentage
    if reached_threshold and spent_cents < limit_cents:
        due.append(AlertType.THRESHOLD_REACHED)
    if spent_cents >= limit_cents:
        due.append(AlertType.EXCEEDED)
    return due


def alert_message(
    alert_type: AlertType,
    spent_cents: int,
    limit_cents: int,
    threshold_percentage: int,
) -> str:
    spent = format_cents(spent_cents)
    limit = format_cents(limit_cents)
    if alert_type == AlertType.THRESHOLD_REACHED:
        return (
            f"You've reached {threshold_percentage}% of your budget limit. "
            f"You've spent {spent} out of {limit}."
        )
    return f"You've exceeded your budget limit! You've spent {spent} out of {limit}."


class AlertEmitter:
    def __init__(self, session: Session) -> None:
        self.session = session

    def unread_types(self, budget_id: int) -> set[AlertType]:
        stmt = select(BudgetAlert.alert_type).where(
            BudgetAlert.budget_id == budget_id,
            BudgetAlert.is_read.is_(False),
        )
        return set(self.session.scalars(stmt).all())

    def evaluate(self, budget: Budget) -> AlertOutcome:
        budget_id = budget.id
        try:
            with self.session.begin_nested():
                created = self._emit(budget)
        except Exception as exc:
            logger.exception(f"budget_alerts_failed: budget_id={budget_id}")
            return AlertOutcome(error=str(exc) or exc.__class__.__name__)

        for alert in created:
            logger.info(
                f"budget_alert: budget_id={budget_id} type={alert.alert_type.value} "
                f"spent_cents={budget.spent_cents} "
                f"limit_cents={budget.amount_limit_cents}"
            )
        return AlertOutcome(created=created)

    def _emit(self, budget: Budget) -> list[BudgetAlert]:
        due = alert_types_due(
            budget.spent_cents, budget.amount_limit_cents, budget.threshold_percentage
        )
        if not due:
            return []

        unread = self.unread_types(budget.id)
        created: list[BudgetAlert] = []
        for alert_type in due:
            if alert_type in unread:
                continue
            created.append(self._create_alert(budget, alert_type))
        if created:
            self.session.flush()
            self.session.expire(budget, ["alerts"])
        return created

    def _create_alert(self, budget: Budget, alert_type: AlertType) -> BudgetAlert:
        alert = BudgetAlert(
            budget_id=budget.id,
            alert_type=alert_type,
            message=alert_message(
                alert_type,
                budget.spent_cents,
                budget.amount_limit_cents,
                budget.threshold_percentage,
            ),
            is_read=False,
        )
        self.session.add(alert)
        return alert
