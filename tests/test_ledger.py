from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import BankAccount, Category, DepositType, Expense, User
from schemas import (
    BankAccountIn,
    DepositIn,
    DepositUpdate,
    ExpenseIn,
    ExpenseUpdate,
)
from services import (
    AccountService,
    ConsistencyFailure,
    DepositService,
    ExpenseFilters,
    ExpenseService,
    NotFoundError,
    ValidationError,
    parse_include,
    EXPENSE_RELATIONS,
)


def _setup(session: Session) -> tuple[User, BankAccount, Category]:
    user = User(email="ana@example.com", name="Ana", password_hash="x")
    session.add(user)
    session.flush()
    category = Category(user_id=user.id, name="Groceries")
    session.add(category)
    session.commit()
    account = AccountService(session, user.id).create(BankAccountIn(name="Checking"))
    return user, account, category


def _balance(session: Session, account_id: int) -> int:
    return session.scalar(
        select(BankAccount.balance_cents).where(BankAccount.id == account_id)
    )


def test_expense_lifecycle_keeps_balance_in_step_with_ledger() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category = _setup(session)
        expenses = ExpenseService(session, user.id)

        expense = expenses.create(
            ExpenseIn(
                bank_account_id=account.id,
                category_id=category.id,
                amount_cents=2500,
                date=date(2025, 3, 4),
            )
        )
        assert _balance(session, account.id) == -2500

        expenses.update(expense.id, ExpenseUpdate(amount_cents=4000))
        assert _balance(session, account.id) == -4000

        expenses.delete(expense.id)
        assert _balance(session, account.id) == 0
        assert AccountService(session, user.id).ledger_balance_cents(account.id) == 0


def test_moving_expense_between_accounts_shifts_both_balances() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, checking, category = _setup(session)
        savings = AccountService(session, user.id).create(BankAccountIn(name="Savings"))
        expenses = ExpenseService(session, user.id)

        expense = expenses.create(
            ExpenseIn(
                bank_account_id=checking.id,
                category_id=category.id,
                amount_cents=1000,
                date=date(2025, 3, 4),
            )
        )
        expenses.update(
            expense.id, ExpenseUpdate(bank_account_id=savings.id, amount_cents=1500)
        )

        assert _balance(session, checking.id) == 0
        assert _balance(session, savings.id) == -1500
        accounts = AccountService(session, user.id)
        for account_id in (checking.id, savings.id):
            assert _balance(session, account_id) == accounts.ledger_balance_cents(
                account_id
            )


def test_expense_with_unknown_account_has_no_side_effects() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category = _setup(session)

        with pytest.raises(NotFoundError):
            ExpenseService(session, user.id).create(
                ExpenseIn(bank_account_id=999, category_id=category.id, amount_cents=100)
            )
        session.rollback()

        assert session.scalars(select(Expense)).all() == []
        assert _balance(session, account.id) == 0


def test_other_users_account_is_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category = _setup(session)
        other = User(email="bo@example.com", name="Bo", password_hash="x")
        session.add(other)
        session.commit()

        with pytest.raises(NotFoundError):
            AccountService(session, other.id).get(account.id)


def test_recurring_flag_requires_template_reference() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category = _setup(session)
        expenses = ExpenseService(session, user.id)

        with pytest.raises(ValidationError):
            expenses.create(
                ExpenseIn(
                    bank_account_id=account.id,
                    category_id=category.id,
                    amount_cents=100,
                    is_recurring=True,
                )
            )

        expense = expenses.create(
            ExpenseIn(bank_account_id=account.id, category_id=category.id, amount_cents=100)
        )
        with pytest.raises(ValidationError):
            expenses.update(expense.id, ExpenseUpdate(is_recurring=True))
        session.rollback()
        assert _balance(session, account.id) == -100


def test_deposit_lifecycle_updates_balance() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, _ = _setup(session)
        salary = DepositType(name="Salary")
        session.add(salary)
        session.commit()
        deposits = DepositService(session, user.id)

        deposit = deposits.create(
            DepositIn(
                bank_account_id=account.id,
                deposit_type_id=salary.id,
                amount_cents=300000,
                date=date(2025, 3, 1),
            )
        )
        assert _balance(session, account.id) == 300000

        deposits.update(deposit.id, DepositUpdate(amount_cents=250000))
        assert _balance(session, account.id) == 250000

        deposits.delete(deposit.id)
        assert _balance(session, account.id) == 0


def test_failed_balance_update_rolls_back_and_raises(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category = _setup(session)

        def broken(*_args, **_kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(AccountService, "apply_delta_in", staticmethod(broken))

        with pytest.raises(ConsistencyFailure):
            ExpenseService(session, user.id).create(
                ExpenseIn(bank_account_id=account.id, category_id=category.id, amount_cents=700)
            )

        assert session.scalars(select(Expense)).all() == []
        assert _balance(session, account.id) == 0


def test_first_account_is_default_and_default_moves() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, checking, _ = _setup(session)
        accounts = AccountService(session, user.id)
        assert checking.is_default

        savings = accounts.create(BankAccountIn(name="Savings", is_default=True))
        session.refresh(checking)
        assert savings.is_default
        assert not checking.is_default


def test_expense_list_filters_and_include_allow_list() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, category = _setup(session)
        expenses = ExpenseService(session, user.id)
        for day in (1, 15, 28):
            expenses.create(
                ExpenseIn(
                    bank_account_id=account.id,
                    category_id=category.id,
                    amount_cents=100 * day,
                    date=date(2025, 2, day),
                )
            )

        rows = expenses.list(
            ExpenseFilters(start_date=date(2025, 2, 10), end_date=date(2025, 2, 20)),
            include=parse_include("category", EXPENSE_RELATIONS),
        )
        assert [e.amount_cents for e in rows] == [1500]
        assert rows[0].category.name == "Groceries"

        assert parse_include(None, EXPENSE_RELATIONS) == tuple(EXPENSE_RELATIONS)
        assert parse_include("", EXPENSE_RELATIONS) == ()
        with pytest.raises(ValidationError):
            parse_include("category,owner", EXPENSE_RELATIONS)


def test_expense_summary_groups_by_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, groceries = _setup(session)
        rent = Category(user_id=user.id, name="Rent")
        session.add(rent)
        session.commit()
        expenses = ExpenseService(session, user.id)
        for category_id, amount in ((groceries.id, 1200), (groceries.id, 800), (rent.id, 90000)):
            expenses.create(
                ExpenseIn(
                    bank_account_id=account.id,
                    category_id=category_id,
                    amount_cents=amount,
                    date=date(2025, 4, 2),
                )
            )

        summary = expenses.summary(date(2025, 4, 1), date(2025, 4, 30))
        assert summary["total_cents"] == 92000
        assert summary["count"] == 3
        assert summary["by_category"]["Groceries"] == {"amount_cents": 2000, "count": 2}
        assert summary["by_category"]["Rent"] == {"amount_cents": 90000, "count": 1}


def test_apply_delta_is_scoped_and_atomic() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account, _ = _setup(session)
        accounts = AccountService(session, user.id)

        accounts.apply_delta(account.id, 1500)
        accounts.apply_delta(account.id, -500)
        session.commit()
        assert _balance(session, account.id) == 1000

        with pytest.raises(NotFoundError):
            accounts.apply_delta(12345, 100)
        with pytest.raises(NotFoundError):
            AccountService.apply_delta_in(session, 12345, 100)
