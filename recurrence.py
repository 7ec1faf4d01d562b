import logging
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from config import get_settings
from models import BankAccount, Expense, Frequency, RecurringExpense


logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Jan 31 + 1 month lands on the last day of February.
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def advance_due_date(current: date, frequency: Frequency) -> date:
    if frequency == Frequency.DAILY:
        return current + timedelta(days=1)
    if frequency == Frequency.WEEKLY:
        return current + timedelta(weeks=1)
    if frequency == Frequency.MONTHLY:
        return add_months(current, 1)
    if frequency == Frequency.YEARLY:
        return add_months(current, 12)
    raise ValueError(f"Invalid frequency: {frequency}")


class RecurringEngine:
    """Posts due recurring expense templates as ordinary expenses."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def due_templates(self, today: date) -> list[RecurringExpense]:
        stmt = (
            select(RecurringExpense)
            .where(
                RecurringExpense.is_active.is_(True),
                RecurringExpense.next_due_date <= today,
                or_(
                    RecurringExpense.end_date.is_(None),
                    RecurringExpense.end_date >= today,
                ),
            )
            .order_by(RecurringExpense.next_due_date, RecurringExpense.id)
        )
        return self.session.scalars(stmt).all()

    def post_due(self, today: Optional[date] = None) -> list[Expense]:
        today = today or local_today()
        posted: list[Expense] = []
        for template in self.due_templates(today):
            expense = self._post(template, today)
            if expense is not None:
                posted.append(expense)
        return posted

    def _post(self, template: RecurringExpense, today: date) -> Optional[Expense]:
        from schemas import ExpenseIn
        from services import ExpenseService

        account = self.session.scalar(
            select(BankAccount)
            .where(
                BankAccount.user_id == template.user_id,
                BankAccount.is_default.is_(True),
            )
            .limit(1)
        )
        if account is None:
            logger.warning(
                f"recurring_skipped: template_id={template.id} "
                f"user_id={template.user_id} reason=no_default_account"
            )
            return None

        template_id = template.id
        # Advanced before posting so the expense and the new due date commit together.
        template.next_due_date = advance_due_date(
            template.next_due_date, template.frequency
        )
        try:
            expense = ExpenseService(self.session, template.user_id).create(
                ExpenseIn(
                    bank_account_id=account.id,
                    category_id=template.category_id,
                    amount_cents=template.amount_cents,
                    note=template.note,
                    date=today,
                    is_recurring=True,
                    recurring_expense_id=template_id,
                )
            )
        except ValueError as exc:
            self.session.rollback()
            logger.warning(
                f"recurring_skipped: template_id={template_id} reason={exc}"
            )
            return None
        logger.info(
            f"recurring_posted: template_id={template.id} expense_id={expense.id} "
            f"next_due_date={template.next_due_date.isoformat()}"
        )
        return expense
