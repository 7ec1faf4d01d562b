from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from alerts import AlertEmitter, alert_message, alert_types_due, format_cents
from database import Base
from models import AlertType, BankAccount, BudgetAlert, Category, User
from schemas import BankAccountIn, BudgetIn, BudgetUpdate, ExpenseIn
from services import AccountService, BudgetService, ExpenseService, NotFoundError


def _setup(session: Session):
    user = User(email="ana@example.com", name="Ana", password_hash="x")
    session.add(user)
    session.flush()
    category = Category(user_id=user.id, name="Food")
    session.add(category)
    session.commit()
    account = AccountService(session, user.id).create(BankAccountIn(name="Checking"))
    budget = BudgetService(session, user.id).create_budget(
        BudgetIn(year=2025, month=6, amount_limit_cents=100000, threshold_percentage=80)
    )
    return user, account, category, budget


def _spend(session: Session, user_id: int, account_id: int, category_id: int, cents: int):
    return ExpenseService(session, user_id).create(
        ExpenseIn(
            bank_account_id=account_id,
            category_id=category_id,
            amount_cents=cents,
            date=date(2025, 6, 10),
        )
    )


def _alert_types(session: Session, budget_id: int) -> list[AlertType]:
    stmt = (
        select(BudgetAlert.alert_type)
        .where(BudgetAlert.budget_id == budget_id)
        .order_by(BudgetAlert.id)
    )
    return list(session.scalars(stmt).all())


def test_alert_types_due_boundaries() -> None:
    assert alert_types_due(79900, 100000, 80) == []
    assert alert_types_due(80000, 100000, 80) == [AlertType.THRESHOLD_REACHED]
    assert alert_types_due(99999, 100000, 80) == [AlertType.THRESHOLD_REACHED]
    assert alert_types_due(100000, 100000, 80) == [AlertType.EXCEEDED]
    assert alert_types_due(120000, 100000, 80) == [AlertType.EXCEEDED]


def test_alert_messages_render_amounts() -> None:
    assert format_cents(80000) == "$800.00"
    assert alert_message(AlertType.THRESHOLD_REACHED, 80000, 100000, 80) == (
        "You've reached 80% of your budget limit. You've spent $800.00 out of $1000.00."
    )
    assert alert_message(AlertType.EXCEEDED, 120050, 100000, 80) == (
        "You've exceeded your budget limit! You've spent $1200.50 out of $1000.00."
    )


def test_spend_sequence_emits_one_alert_per_crossing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category, budget = _setup(session)

        _spend(session, user.id, account.id, category.id, 79900)
        assert _alert_types(session, budget.id) == []

        _spend(session, user.id, account.id, category.id, 100)
        assert _alert_types(session, budget.id) == [AlertType.THRESHOLD_REACHED]

        _spend(session, user.id, account.id, category.id, 15000)
        assert _alert_types(session, budget.id) == [AlertType.THRESHOLD_REACHED]

        _spend(session, user.id, account.id, category.id, 5000)
        assert _alert_types(session, budget.id) == [
            AlertType.THRESHOLD_REACHED,
            AlertType.EXCEEDED,
        ]

        session.refresh(budget)
        assert budget.spent_cents == 100000


def test_jump_past_limit_emits_only_exceeded() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category, budget = _setup(session)

        _spend(session, user.id, account.id, category.id, 120000)

        assert _alert_types(session, budget.id) == [AlertType.EXCEEDED]


def test_read_alert_allows_a_new_one_of_the_same_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category, budget = _setup(session)
        budgets = BudgetService(session, user.id)

        _spend(session, user.id, account.id, category.id, 85000)
        unread = budgets.get_budget_alerts(is_read=False)
        assert len(unread) == 1

        budgets.mark_alert_as_read(unread[0].id)
        assert budgets.get_budget_alerts(is_read=False) == []

        _spend(session, user.id, account.id, category.id, 1000)
        assert _alert_types(session, budget.id) == [
            AlertType.THRESHOLD_REACHED,
            AlertType.THRESHOLD_REACHED,
        ]
        assert len(budgets.get_budget_alerts(is_read=False)) == 1
        assert len(budgets.get_budget_alerts()) == 2


def test_mark_unknown_alert_raises_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, *_ = _setup(session)
        with pytest.raises(NotFoundError):
            BudgetService(session, user.id).mark_alert_as_read(42)


def test_alert_failure_does_not_fail_the_expense(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category, budget = _setup(session)

        def broken(self, budget, alert_type):
            raise RuntimeError("alert store unavailable")

        monkeypatch.setattr(AlertEmitter, "_create_alert", broken)

        expense = _spend(session, user.id, account.id, category.id, 90000)

        assert expense.id is not None
        assert _alert_types(session, budget.id) == []
        session.refresh(budget)
        assert budget.spent_cents == 90000
        balance = session.scalar(
            select(BankAccount.balance_cents).where(BankAccount.id == account.id)
        )
        assert balance == -90000


def test_evaluate_reports_error_in_outcome(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category, budget = _setup(session)
        _spend(session, user.id, account.id, category.id, 85000)
        BudgetService(session, user.id).mark_alert_as_read(
            _first_alert_id(session, budget.id)
        )

        def broken(self, budget, alert_type):
            raise RuntimeError("alert store unavailable")

        monkeypatch.setattr(AlertEmitter, "_create_alert", broken)
        outcome = AlertEmitter(session).evaluate(budget)

        assert not outcome.ok
        assert outcome.created == []
        assert "alert store unavailable" in outcome.error


def _first_alert_id(session: Session, budget_id: int) -> int:
    return session.scalar(
        select(BudgetAlert.id).where(BudgetAlert.budget_id == budget_id).limit(1)
    )


def test_raising_limit_does_not_emit_and_lowering_does() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category, budget = _setup(session)
        budgets = BudgetService(session, user.id)
        _spend(session, user.id, account.id, category.id, 50000)

        budgets.update_budget(budget.id, BudgetUpdate(amount_limit_cents=200000))
        assert _alert_types(session, budget.id) == []

        budgets.update_budget(budget.id, BudgetUpdate(amount_limit_cents=40000))
        assert _alert_types(session, budget.id) == [AlertType.EXCEEDED]
