from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import BankAccount, Budget, Category, Expense, Frequency, RecurringExpense, User
from recurrence import RecurringEngine, add_months, advance_due_date
from schemas import BankAccountIn, BudgetIn, RecurringExpenseIn
from services import AccountService, BudgetService, RecurringExpenseService


def test_add_months_clamps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
    assert add_months(date(2024, 11, 30), 2) == date(2025, 1, 30)
    assert add_months(date(2024, 2, 29), 12) == date(2025, 2, 28)


def test_advance_due_date_per_frequency():
    start = date(2024, 3, 31)
    assert advance_due_date(start, Frequency.DAILY) == date(2024, 4, 1)
    assert advance_due_date(start, Frequency.WEEKLY) == date(2024, 4, 7)
    assert advance_due_date(start, Frequency.MONTHLY) == date(2024, 4, 30)
    assert advance_due_date(start, Frequency.YEARLY) == date(2025, 3, 31)


def _setup(session: Session):
    user = User(email="ana@example.com", name="Ana", password_hash="x")
    session.add(user)
    session.flush()
    category = Category(user_id=user.id, name="Rent")
    session.add(category)
    session.commit()
    return user, category


def test_template_first_due_is_one_period_after_start():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, category = _setup(session)
        template = RecurringExpenseService(session, user.id).create(
            RecurringExpenseIn(
                category_id=category.id,
                amount_cents=90000,
                frequency=Frequency.MONTHLY,
                start_date=date(2025, 1, 31),
            )
        )
        assert template.next_due_date == date(2025, 2, 28)


def test_recurring_engine_posts_through_the_ledger():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, category = _setup(session)
        account = AccountService(session, user.id).create(BankAccountIn(name="Checking"))
        budget = BudgetService(session, user.id).create_budget(
            BudgetIn(year=2025, month=2, amount_limit_cents=100000)
        )
        template = RecurringExpenseService(session, user.id).create(
            RecurringExpenseIn(
                category_id=category.id,
                amount_cents=90000,
                frequency=Frequency.MONTHLY,
                start_date=date(2025, 1, 15),
            )
        )

        posted = RecurringEngine(session).post_due(today=date(2025, 2, 15))
        assert len(posted) == 1
        assert posted[0].is_recurring
        assert posted[0].recurring_expense_id == template.id
        assert posted[0].date == date(2025, 2, 15)

        # A second run on the same day finds nothing due.
        assert RecurringEngine(session).post_due(today=date(2025, 2, 15)) == []

        session.refresh(template)
        assert template.next_due_date == date(2025, 3, 15)
        balance = session.scalar(
            select(BankAccount.balance_cents).where(BankAccount.id == account.id)
        )
        assert balance == -90000
        spent = session.scalar(select(Budget.spent_cents).where(Budget.id == budget.id))
        assert spent == 90000


def test_recurring_engine_skips_users_without_default_account():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, category = _setup(session)
        template = RecurringExpenseService(session, user.id).create(
            RecurringExpenseIn(
                category_id=category.id,
                amount_cents=500,
                frequency=Frequency.WEEKLY,
                start_date=date(2025, 1, 1),
            )
        )

        assert RecurringEngine(session).post_due(today=date(2025, 1, 10)) == []
        session.refresh(template)
        assert template.next_due_date == date(2025, 1, 8)
        assert session.scalars(select(Expense)).all() == []


def test_ended_and_inactive_templates_are_not_posted():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, category = _setup(session)
        AccountService(session, user.id).create(BankAccountIn(name="Checking"))
        service = RecurringExpenseService(session, user.id)
        ended = service.create(
            RecurringExpenseIn(
                category_id=category.id,
                amount_cents=500,
                frequency=Frequency.DAILY,
                start_date=date(2025, 1, 1),
                end_date=date(2025, 1, 3),
            )
        )
        paused = service.create(
            RecurringExpenseIn(
                category_id=category.id,
                amount_cents=500,
                frequency=Frequency.DAILY,
                start_date=date(2025, 1, 1),
            )
        )
        service.deactivate(paused.id)

        assert RecurringEngine(session).post_due(today=date(2025, 1, 10)) == []
        assert session.get(RecurringExpense, ended.id).is_active
