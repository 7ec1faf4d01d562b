from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, noload, selectinload

from alerts import AlertEmitter, AlertOutcome, spent_percentage
from auth import AuthenticationError, hash_password, verify_password
from models import (
    BankAccount,
    Budget,
    BudgetAlert,
    Category,
    Deposit,
    DepositType,
    Expense,
    Receipt,
    ReceiptStatus,
    RecurringExpense,
    User,
)
from periods import month_bounds
from recurrence import advance_due_date, local_today
from schemas import (
    BankAccountIn,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    DepositIn,
    DepositTypeIn,
    DepositUpdate,
    ExpenseIn,
    ExpenseUpdate,
    ReceiptIn,
    RecurringExpenseIn,
    UserIn,
)


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ValidationError(ValueError):
    pass


class DuplicateBudgetError(ValidationError):
    pass


class ReceiptCategoryAmbiguous(ValidationError):
    pass


class ConsistencyFailure(RuntimeError):
    """A balance or spent-amount update failed after the ledger row was written."""


EXPENSE_RELATIONS = {
    "category": Expense.category,
    "bank_account": Expense.bank_account,
    "receipt": Expense.receipt,
    "recurring_expense": Expense.recurring_expense,
}

DEPOSIT_RELATIONS = {
    "deposit_type": Deposit.deposit_type,
    "bank_account": Deposit.bank_account,
}


def parse_include(raw: Optional[str], allowed: dict[str, object]) -> tuple[str, ...]:
    """Validate a comma separated ``include`` value against an allow-list.

    ``None`` means every allowed relation; an empty string means none.
    """
    if raw is None:
        return tuple(allowed)
    names = tuple(dict.fromkeys(n.strip() for n in raw.split(",") if n.strip()))
    unknown = sorted(set(names) - set(allowed))
    if unknown:
        raise ValidationError(
            f"Unknown include: {', '.join(unknown)}; "
            f"allowed: {', '.join(sorted(allowed))}"
        )
    return names


def _relation_options(include: tuple[str, ...], allowed: dict[str, object]) -> list:
    unknown = sorted(set(include) - set(allowed))
    if unknown:
        raise ValidationError(f"Unknown include: {', '.join(unknown)}")
    return [
        joinedload(rel) if name in include else noload(rel)
        for name, rel in allowed.items()
    ]


def _apply_balance_delta(session: Session, account_id: int, delta_cents: int) -> None:
    """Run the balance half of a ledger mutation inside the caller's transaction."""
    try:
        AccountService.apply_delta_in(session, account_id, delta_cents)
    except Exception as exc:
        session.rollback()
        logger.exception(
            f"ledger_consistency_failure: account_id={account_id} "
            f"delta_cents={delta_cents}"
        )
        raise ConsistencyFailure(
            f"Failed to update bank account balance: {exc}"
        ) from exc


@dataclass(frozen=True)
class ExpenseFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    bank_account_id: Optional[int] = None
    category_id: Optional[int] = None


@dataclass(frozen=True)
class DepositFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    bank_account_id: Optional[int] = None
    deposit_type_id: Optional[int] = None


@dataclass
class BudgetSpendingUpdate:
    budget_id: int
    spent_cents: int
    alerts: AlertOutcome


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )

    def register(self, data: UserIn) -> User:
        if self._by_email(data.email):
            raise ValidationError("Email is already registered")
        user = User(
            email=data.email.strip().lower(),
            name=data.name.strip(),
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self._by_email(email)
        if not user or not verify_password(password, user.password_hash):
            raise AuthenticationError("Invalid email or password")
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[BankAccount]:
        stmt = (
            select(BankAccount)
            .where(BankAccount.user_id == self.user_id)
            .order_by(BankAccount.is_default.desc(), BankAccount.name, BankAccount.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> BankAccount:
        account = self.session.get(BankAccount, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Bank account not found")
        return account

    def _clear_default(self) -> None:
        stmt = select(BankAccount).where(
            BankAccount.user_id == self.user_id, BankAccount.is_default.is_(True)
        )
        for account in self.session.scalars(stmt):
            account.is_default = False

    def create(self, data: BankAccountIn) -> BankAccount:
        has_any = self.session.scalar(
            select(func.count(BankAccount.id)).where(
                BankAccount.user_id == self.user_id
            )
        )
        # A user's first account becomes the default for recurring expenses.
        is_default = data.is_default or not has_any
        if is_default:
            self._clear_default()
        account = BankAccount(
            user_id=self.user_id,
            name=data.name.strip(),
            bank_name=data.bank_name,
            account_number=data.account_number,
            is_default=is_default,
            balance_cents=0,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: BankAccountIn) -> BankAccount:
        account = self.get(account_id)
        if data.is_default and not account.is_default:
            self._clear_default()
        account.name = data.name.strip()
        account.bank_name = data.bank_name
        account.account_number = data.account_number
        if data.is_default:
            account.is_default = True
        self.session.commit()
        self.session.refresh(account)
        return account

    def apply_delta(self, account_id: int, delta_cents: int) -> None:
        self.get(account_id)
        self.apply_delta_in(self.session, account_id, delta_cents)

    @staticmethod
    def apply_delta_in(session: Session, account_id: int, delta_cents: int) -> None:
        """Atomically add ``delta_cents`` to an account balance.

        This is the only write path for ``BankAccount.balance_cents``. It does
        not commit; the caller owns the transaction.
        """
        result = session.execute(
            update(BankAccount)
            .where(BankAccount.id == account_id)
            .values(balance_cents=BankAccount.balance_cents + delta_cents)
        )
        if result.rowcount == 0:
            raise NotFoundError("Bank account not found")
        logger.debug(f"ledger_delta: account_id={account_id} delta_cents={delta_cents}")

    def ledger_balance_cents(self, account_id: int) -> int:
        """Balance recomputed from the ledger rows, for drift checks."""
        account = self.get(account_id)
        deposits = self.session.execute(
            select(func.coalesce(func.sum(Deposit.amount_cents), 0)).where(
                Deposit.bank_account_id == account.id
            )
        ).scalar_one()
        expenses = self.session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.bank_account_id == account.id
            )
        ).scalar_one()
        return int(deposits or 0) - int(expenses or 0)


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if self._name_taken(name):
            raise ValidationError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            description=data.description,
            icon=data.icon,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        if self._name_taken(name, exclude_id=category.id):
            raise ValidationError("Category with this name already exists")
        category.name = name
        category.description = data.description
        category.icon = data.icon
        category.color = data.color
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.session.scalar(
            select(func.count(Expense.id)).where(Expense.category_id == category.id)
        ) or self.session.scalar(
            select(func.count(RecurringExpense.id)).where(
                RecurringExpense.category_id == category.id
            )
        )
        if in_use:
            raise ValidationError("Category is in use and cannot be deleted")
        self.session.delete(category)
        self.session.commit()


class DepositTypeService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[DepositType]:
        return self.session.scalars(select(DepositType).order_by(DepositType.name)).all()

    def get(self, deposit_type_id: int) -> DepositType:
        deposit_type = self.session.get(DepositType, deposit_type_id)
        if not deposit_type:
            raise NotFoundError("Deposit type not found")
        return deposit_type

    def create(self, data: DepositTypeIn) -> DepositType:
        name = data.name.strip()
        existing = self.session.scalar(
            select(DepositType).where(func.lower(DepositType.name) == name.lower())
        )
        if existing:
            raise ValidationError("Deposit type already exists")
        deposit_type = DepositType(
            name=name,
            description=data.description,
            icon=data.icon,
            color=data.color,
        )
        self.session.add(deposit_type)
        self.session.commit()
        self.session.refresh(deposit_type)
        return deposit_type


class RecurringExpenseService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, recurring_id: int) -> RecurringExpense:
        template = self.session.get(RecurringExpense, recurring_id)
        if not template or template.user_id != self.user_id:
            raise NotFoundError("Recurring expense not found")
        return template

    def list_active(self) -> list[RecurringExpense]:
        stmt = (
            select(RecurringExpense)
            .options(joinedload(RecurringExpense.category))
            .where(
                RecurringExpense.user_id == self.user_id,
                RecurringExpense.is_active.is_(True),
            )
            .order_by(RecurringExpense.next_due_date, RecurringExpense.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringExpenseIn) -> RecurringExpense:
        CategoryService(self.session, self.user_id).get(data.category_id)
        if data.end_date and data.end_date < data.start_date:
            raise ValidationError("End date must not be before start date")
        template = RecurringExpense(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            note=data.note,
            frequency=data.frequency,
            start_date=data.start_date,
            end_date=data.end_date,
            next_due_date=advance_due_date(data.start_date, data.frequency),
            is_active=True,
        )
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        return template

    def deactivate(self, recurring_id: int) -> None:
        template = self.get(recurring_id)
        template.is_active = False
        self.session.commit()


class ExpenseService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def _validate_recurring(
        is_recurring: bool, recurring_expense_id: Optional[int]
    ) -> None:
        if is_recurring and recurring_expense_id is None:
            raise ValidationError(
                "recurring_expense_id is required when is_recurring is true"
            )

    def _receipt(self, receipt_id: int) -> Receipt:
        receipt = self.session.get(Receipt, receipt_id)
        if not receipt or receipt.user_id != self.user_id:
            raise NotFoundError("Receipt not found")
        return receipt

    def _track_spending(self, on_date: date, delta_cents: int) -> None:
        budgets = BudgetService(self.session, self.user_id)
        try:
            result = budgets.apply_expense_change(on_date, delta_cents)
        except Exception as exc:
            self.session.rollback()
            logger.exception(
                f"budget_consistency_failure: user_id={self.user_id} "
                f"date={on_date.isoformat()} delta_cents={delta_cents}"
            )
            raise ConsistencyFailure(
                f"Failed to update budget spending: {exc}"
            ) from exc
        if result is not None and not result.alerts.ok:
            logger.warning(
                f"budget_alerts_skipped: budget_id={result.budget_id} "
                f"error={result.alerts.error}"
            )

    def get(self, expense_id: int, include: tuple[str, ...] = ()) -> Expense:
        stmt = (
            select(Expense)
            .options(*_relation_options(include, EXPENSE_RELATIONS))
            .where(Expense.user_id == self.user_id, Expense.id == expense_id)
        )
        expense = self.session.scalar(stmt)
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def list(
        self,
        filters: Optional[ExpenseFilters] = None,
        include: tuple[str, ...] = (),
    ) -> list[Expense]:
        filters = filters or ExpenseFilters()
        stmt = (
            select(Expense)
            .options(*_relation_options(include, EXPENSE_RELATIONS))
            .where(Expense.user_id == self.user_id)
            .order_by(Expense.date.desc(), Expense.id.desc())
        )
        if filters.start_date:
            stmt = stmt.where(Expense.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Expense.date <= filters.end_date)
        if filters.bank_account_id:
            stmt = stmt.where(Expense.bank_account_id == filters.bank_account_id)
        if filters.category_id:
            stmt = stmt.where(Expense.category_id == filters.category_id)
        return self.session.scalars(stmt).unique().all()

    def create(self, data: ExpenseIn) -> Expense:
        self._validate_recurring(data.is_recurring, data.recurring_expense_id)
        account = AccountService(self.session, self.user_id).get(data.bank_account_id)
        CategoryService(self.session, self.user_id).get(data.category_id)
        if data.recurring_expense_id is not None:
            RecurringExpenseService(self.session, self.user_id).get(
                data.recurring_expense_id
            )
        if data.receipt_id is not None:
            self._receipt(data.receipt_id)

        expense = Expense(
            user_id=self.user_id,
            bank_account_id=account.id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            note=data.note,
            date=data.date or local_today(),
            is_recurring=data.is_recurring,
            recurring_expense_id=data.recurring_expense_id,
            receipt_id=data.receipt_id,
        )
        self.session.add(expense)
        self.session.flush()

        _apply_balance_delta(self.session, account.id, -expense.amount_cents)
        self._track_spending(expense.date, expense.amount_cents)

        self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_created: expense_id={expense.id} account_id={account.id} "
            f"amount_cents={expense.amount_cents}"
        )
        return expense

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.get(expense_id)
        fields = data.model_fields_set

        is_recurring = (
            bool(data.is_recurring)
            if "is_recurring" in fields and data.is_recurring is not None
            else expense.is_recurring
        )
        recurring_expense_id = (
            data.recurring_expense_id
            if "recurring_expense_id" in fields
            else expense.recurring_expense_id
        )
        self._validate_recurring(is_recurring, recurring_expense_id)

        if data.bank_account_id is not None:
            AccountService(self.session, self.user_id).get(data.bank_account_id)
        if data.category_id is not None:
            CategoryService(self.session, self.user_id).get(data.category_id)
        if (
            recurring_expense_id is not None
            and recurring_expense_id != expense.recurring_expense_id
        ):
            RecurringExpenseService(self.session, self.user_id).get(
                recurring_expense_id
            )

        old_amount = expense.amount_cents
        old_account_id = expense.bank_account_id
        old_date = expense.date

        if data.bank_account_id is not None:
            expense.bank_account_id = data.bank_account_id
        if data.category_id is not None:
            expense.category_id = data.category_id
        if data.amount_cents is not None:
            expense.amount_cents = data.amount_cents
        if "note" in fields:
            expense.note = data.note
        if data.date is not None:
            expense.date = data.date
        expense.is_recurring = is_recurring
        expense.recurring_expense_id = recurring_expense_id
        self.session.flush()

        new_amount = expense.amount_cents
        if expense.bank_account_id != old_account_id:
            _apply_balance_delta(self.session, old_account_id, old_amount)
            _apply_balance_delta(self.session, expense.bank_account_id, -new_amount)
        elif new_amount != old_amount:
            _apply_balance_delta(self.session, old_account_id, -(new_amount - old_amount))

        if (old_date.year, old_date.month) != (expense.date.year, expense.date.month):
            self._track_spending(old_date, -old_amount)
            self._track_spending(expense.date, new_amount)
        else:
            self._track_spending(expense.date, new_amount - old_amount)

        self.session.commit()
        self.session.refresh(expense)
        return expense

    def _remove(self, expense: Expense) -> None:
        amount = expense.amount_cents
        account_id = expense.bank_account_id
        on_date = expense.date
        self.session.delete(expense)
        self.session.flush()
        _apply_balance_delta(self.session, account_id, amount)
        self._track_spending(on_date, -amount)

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        expense_id = expense.id
        self._remove(expense)
        self.session.commit()
        logger.info(f"expense_deleted: expense_id={expense_id}")

    def summary(self, start: date, end: date) -> dict[str, object]:
        stmt = (
            select(
                Category.name,
                func.coalesce(func.sum(Expense.amount_cents), 0).label("amount"),
                func.count(Expense.id).label("count"),
            )
            .join(Category, Expense.category_id == Category.id)
            .where(
                Expense.user_id == self.user_id,
                Expense.date >= start,
                Expense.date <= end,
            )
            .group_by(Category.name)
            .order_by(Category.name)
        )
        by_category: dict[str, dict[str, int]] = {}
        total = 0
        count = 0
        for row in self.session.execute(stmt):
            amount = int(row.amount or 0)
            by_category[row.name] = {"amount_cents": amount, "count": int(row.count)}
            total += amount
            count += int(row.count)
        return {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "total_cents": total,
            "count": count,
            "by_category": by_category,
        }


class DepositService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, deposit_id: int, include: tuple[str, ...] = ()) -> Deposit:
        stmt = (
            select(Deposit)
            .options(*_relation_options(include, DEPOSIT_RELATIONS))
            .where(Deposit.user_id == self.user_id, Deposit.id == deposit_id)
        )
        deposit = self.session.scalar(stmt)
        if not deposit:
            raise NotFoundError("Deposit not found")
        return deposit

    def list(
        self,
        filters: Optional[DepositFilters] = None,
        include: tuple[str, ...] = (),
    ) -> list[Deposit]:
        filters = filters or DepositFilters()
        stmt = (
            select(Deposit)
            .options(*_relation_options(include, DEPOSIT_RELATIONS))
            .where(Deposit.user_id == self.user_id)
            .order_by(Deposit.date.desc(), Deposit.id.desc())
        )
        if filters.start_date:
            stmt = stmt.where(Deposit.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Deposit.date <= filters.end_date)
        if filters.bank_account_id:
            stmt = stmt.where(Deposit.bank_account_id == filters.bank_account_id)
        if filters.deposit_type_id:
            stmt = stmt.where(Deposit.deposit_type_id == filters.deposit_type_id)
        return self.session.scalars(stmt).unique().all()

    def create(self, data: DepositIn) -> Deposit:
        account = AccountService(self.session, self.user_id).get(data.bank_account_id)
        DepositTypeService(self.session).get(data.deposit_type_id)

        deposit = Deposit(
            user_id=self.user_id,
            bank_account_id=account.id,
            deposit_type_id=data.deposit_type_id,
            amount_cents=data.amount_cents,
            note=data.note,
            date=data.date or local_today(),
        )
        self.session.add(deposit)
        self.session.flush()

        _apply_balance_delta(self.session, account.id, deposit.amount_cents)

        self.session.commit()
        self.session.refresh(deposit)
        logger.info(
            f"deposit_created: deposit_id={deposit.id} account_id={account.id} "
            f"amount_cents={deposit.amount_cents}"
        )
        return deposit

    def update(self, deposit_id: int, data: DepositUpdate) -> Deposit:
        deposit = self.get(deposit_id)
        if data.bank_account_id is not None:
            AccountService(self.session, self.user_id).get(data.bank_account_id)
        if data.deposit_type_id is not None:
            DepositTypeService(self.session).get(data.deposit_type_id)

        old_amount = deposit.amount_cents
        old_account_id = deposit.bank_account_id

        if data.bank_account_id is not None:
            deposit.bank_account_id = data.bank_account_id
        if data.deposit_type_id is not None:
            deposit.deposit_type_id = data.deposit_type_id
        if data.amount_cents is not None:
            deposit.amount_cents = data.amount_cents
        if "note" in data.model_fields_set:
            deposit.note = data.note
        if data.date is not None:
            deposit.date = data.date
        self.session.flush()

        new_amount = deposit.amount_cents
        if deposit.bank_account_id != old_account_id:
            _apply_balance_delta(self.session, old_account_id, -old_amount)
            _apply_balance_delta(self.session, deposit.bank_account_id, new_amount)
        elif new_amount != old_amount:
            _apply_balance_delta(self.session, old_account_id, new_amount - old_amount)

        self.session.commit()
        self.session.refresh(deposit)
        return deposit

    def delete(self, deposit_id: int) -> None:
        deposit = self.get(deposit_id)
        amount = deposit.amount_cents
        account_id = deposit.bank_account_id
        self.session.delete(deposit)
        self.session.flush()
        _apply_balance_delta(self.session, account_id, -amount)
        self.session.commit()
        logger.info(f"deposit_deleted: deposit_id={deposit_id}")

    def summary(self, start: date, end: date) -> dict[str, object]:
        stmt = (
            select(
                DepositType.name,
                func.coalesce(func.sum(Deposit.amount_cents), 0).label("amount"),
                func.count(Deposit.id).label("count"),
            )
            .join(DepositType, Deposit.deposit_type_id == DepositType.id)
            .where(
                Deposit.user_id == self.user_id,
                Deposit.date >= start,
                Deposit.date <= end,
            )
            .group_by(DepositType.name)
            .order_by(DepositType.name)
        )
        by_type: dict[str, dict[str, int]] = {}
        total = 0
        count = 0
        for row in self.session.execute(stmt):
            amount = int(row.amount or 0)
            by_type[row.name] = {"amount_cents": amount, "count": int(row.count)}
            total += amount
            count += int(row.count)
        return {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "total_cents": total,
            "count": count,
            "by_type": by_type,
        }


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _spent_for_month(self, year: int, month: int) -> int:
        start, following = month_bounds(year, month)
        total = self.session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.user_id == self.user_id,
                Expense.date >= start,
                Expense.date < following,
            )
        ).scalar_one()
        return int(total or 0)

    def _budget_for_month(self, year: int, month: int) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.year == year,
                Budget.month == month,
            )
        )

    def create_budget(self, data: BudgetIn) -> Budget:
        if self._budget_for_month(data.year, data.month):
            raise DuplicateBudgetError("Budget already exists for this month")

        budget = Budget(
            user_id=self.user_id,
            year=data.year,
            month=data.month,
            amount_limit_cents=data.amount_limit_cents,
            threshold_percentage=data.threshold_percentage,
            spent_cents=self._spent_for_month(data.year, data.month),
        )
        self.session.add(budget)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateBudgetError("Budget already exists for this month") from exc

        AlertEmitter(self.session).evaluate(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(
            f"budget_created: budget_id={budget.id} year={budget.year} "
            f"month={budget.month} spent_cents={budget.spent_cents}"
        )
        return budget

    def list_budgets(self, year: Optional[int] = None) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.alerts))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.year.desc(), Budget.month.desc())
        )
        if year:
            stmt = stmt.where(Budget.year == year)
        return self.session.scalars(stmt).all()

    def get_budget(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def get_current_budget(self, today: Optional[date] = None) -> Optional[Budget]:
        today = today or local_today()
        return self._budget_for_month(today.year, today.month)

    def update_budget(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get_budget(budget_id)
        if data.amount_limit_cents is not None:
            budget.amount_limit_cents = data.amount_limit_cents
        if data.threshold_percentage is not None:
            budget.threshold_percentage = data.threshold_percentage
        self.session.flush()
        AlertEmitter(self.session).evaluate(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete_budget(self, budget_id: int) -> None:
        budget = self.get_budget(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def _increment_spending(
        self, budget: Budget, amount_delta_cents: int
    ) -> BudgetSpendingUpdate:
        self.session.execute(
            update(Budget)
            .where(Budget.id == budget.id)
            .values(spent_cents=Budget.spent_cents + amount_delta_cents)
        )
        self.session.refresh(budget)
        alerts = AlertEmitter(self.session).evaluate(budget)
        return BudgetSpendingUpdate(
            budget_id=budget.id, spent_cents=budget.spent_cents, alerts=alerts
        )

    def update_budget_spending(
        self, budget_id: int, amount_delta_cents: int
    ) -> BudgetSpendingUpdate:
        budget = self.get_budget(budget_id)
        result = self._increment_spending(budget, amount_delta_cents)
        self.session.commit()
        return result

    def apply_expense_change(
        self, on_date: date, amount_delta_cents: int
    ) -> Optional[BudgetSpendingUpdate]:
        """Incremental hot path for expense writes; the caller commits."""
        if amount_delta_cents == 0:
            return None
        budget = self._budget_for_month(on_date.year, on_date.month)
        if budget is None:
            return None
        return self._increment_spending(budget, amount_delta_cents)

    def recalculate_budget_spending(self, budget_id: int) -> BudgetSpendingUpdate:
        budget = self.get_budget(budget_id)
        total = self._spent_for_month(budget.year, budget.month)
        budget.spent_cents = total
        self.session.flush()
        alerts = AlertEmitter(self.session).evaluate(budget)
        self.session.commit()
        logger.info(f"budget_recalculated: budget_id={budget.id} spent_cents={total}")
        return BudgetSpendingUpdate(budget_id=budget.id, spent_cents=total, alerts=alerts)

    def get_budget_summary(self, year: int) -> dict[str, object]:
        budgets = self.session.scalars(
            select(Budget)
            .where(Budget.user_id == self.user_id, Budget.year == year)
            .order_by(Budget.month.asc())
        ).all()

        total_budget = 0
        total_spent = 0
        total_remaining = 0
        months: list[dict[str, object]] = []
        for budget in budgets:
            limit = budget.amount_limit_cents
            spent = budget.spent_cents
            remaining = limit - spent
            total_budget += limit
            total_spent += spent
            total_remaining += remaining
            months.append(
                {
                    "month": budget.month,
                    "limit_cents": limit,
                    "spent_cents": spent,
                    "remaining_cents": remaining,
                    "percentage": spent_percentage(spent, limit),
                }
            )

        return {
            "year": year,
            "total_budget_cents": total_budget,
            "total_spent_cents": total_spent,
            "total_remaining_cents": total_remaining,
            "average_spent_percentage": spent_percentage(total_spent, total_budget),
            "months": months,
        }

    def get_budget_alerts(self, is_read: Optional[bool] = None) -> list[BudgetAlert]:
        stmt = (
            select(BudgetAlert)
            .join(Budget, BudgetAlert.budget_id == Budget.id)
            .where(Budget.user_id == self.user_id)
            .order_by(BudgetAlert.created_at.desc(), BudgetAlert.id.desc())
        )
        if is_read is not None:
            stmt = stmt.where(BudgetAlert.is_read.is_(is_read))
        return self.session.scalars(stmt).all()

    def mark_alert_as_read(self, alert_id: int) -> BudgetAlert:
        alert = self.session.scalar(
            select(BudgetAlert)
            .join(Budget, BudgetAlert.budget_id == Budget.id)
            .where(BudgetAlert.id == alert_id, Budget.user_id == self.user_id)
        )
        if not alert:
            raise NotFoundError("Budget alert not found")
        alert.is_read = True
        self.session.commit()
        self.session.refresh(alert)
        return alert


def recalculate_all_budgets(session: Session) -> list[dict[str, object]]:
    """Drift correction over every budget; one failing budget does not stop the sweep."""
    budgets = session.execute(select(Budget.id, Budget.user_id).order_by(Budget.id)).all()
    results: list[dict[str, object]] = []
    for row in budgets:
        try:
            outcome = BudgetService(session, row.user_id).recalculate_budget_spending(
                row.id
            )
        except Exception as exc:
            session.rollback()
            logger.exception(f"budget_recalc_failed: budget_id={row.id}")
            results.append({"budget_id": row.id, "success": False, "error": str(exc)})
            continue
        results.append(
            {
                "budget_id": row.id,
                "success": True,
                "spent_cents": outcome.spent_cents,
                "alerts_created": len(outcome.alerts.created),
            }
        )
    return results


class ReceiptService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Receipt]:
        stmt = (
            select(Receipt)
            .options(selectinload(Receipt.expenses))
            .where(Receipt.user_id == self.user_id)
            .order_by(Receipt.created_at.desc(), Receipt.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, receipt_id: int) -> Receipt:
        receipt = self.session.get(Receipt, receipt_id)
        if not receipt or receipt.user_id != self.user_id:
            raise NotFoundError("Receipt not found")
        return receipt

    def _resolve_category(self, name: Optional[str]) -> int:
        categories = CategoryService(self.session, self.user_id)
        raw = (name or "").strip() or "Uncategorized"
        input_lower = raw.lower()

        exact = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == input_lower,
            )
        )
        if exact:
            return exact.id

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories.list_all():
            name_lower = (category.name or "").strip().lower()
            dist = int(Levenshtein.distance(input_lower, name_lower))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted({c.name for c in best}))
                raise ReceiptCategoryAmbiguous(
                    f"Category '{raw}' is ambiguous; matches: {options}"
                )
            return best[0].id

        return categories.create(CategoryIn(name=raw)).id

    def ingest(self, data: ReceiptIn) -> Receipt:
        """Store extracted receipt data and book it as an expense."""
        AccountService(self.session, self.user_id).get(data.bank_account_id)
        category_id = self._resolve_category(data.category)
        receipt_date = data.receipt_date or local_today()

        receipt = Receipt(
            user_id=self.user_id,
            merchant=data.merchant.strip(),
            total_cents=data.total_cents,
            receipt_date=receipt_date,
            raw_text=data.raw_text,
            status=ReceiptStatus.PROCESSED,
        )
        self.session.add(receipt)
        self.session.flush()

        ExpenseService(self.session, self.user_id).create(
            ExpenseIn(
                bank_account_id=data.bank_account_id,
                category_id=category_id,
                amount_cents=data.total_cents,
                note=data.note or receipt.merchant,
                date=receipt_date,
                receipt_id=receipt.id,
            )
        )
        self.session.refresh(receipt)
        return receipt

    def delete(self, receipt_id: int) -> None:
        receipt = self.get(receipt_id)
        expenses = ExpenseService(self.session, self.user_id)
        for expense in list(receipt.expenses):
            expenses._remove(expense)
        self.session.expire(receipt, ["expenses"])
        self.session.delete(receipt)
        self.session.commit()
