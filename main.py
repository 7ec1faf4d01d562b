import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from auth import issue_access_token, read_access_token
from config import get_settings
from database import get_db
from periods import Period, resolve_period
from recurrence import RecurringEngine, local_today
from scheduler import SchedulerManager
from schemas import (
    BankAccountIn,
    BankAccountOut,
    BudgetAlertOut,
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    CategoryIn,
    CategoryOut,
    DepositIn,
    DepositOut,
    DepositTypeIn,
    DepositTypeOut,
    DepositUpdate,
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdate,
    LoginIn,
    ReceiptIn,
    ReceiptOut,
    RecurringExpenseIn,
    RecurringExpenseOut,
    TokenOut,
    UserIn,
    UserOut,
)
from services import (
    DEPOSIT_RELATIONS,
    EXPENSE_RELATIONS,
    AccountService,
    AuthenticationError,
    BudgetService,
    CategoryService,
    ConsistencyFailure,
    DepositFilters,
    DepositService,
    DepositTypeService,
    DuplicateBudgetError,
    ExpenseFilters,
    ExpenseService,
    NotFoundError,
    ReceiptService,
    RecurringExpenseService,
    UserService,
    parse_include,
    recalculate_all_budgets,
)


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Ledger")

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(ConsistencyFailure)
def consistency_failure_handler(request: Request, exc: ConsistencyFailure):
    logger.error(f"request_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, AuthenticationError):
        return HTTPException(
            status_code=401,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, DuplicateBudgetError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def current_user_id(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> int:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise http_error(AuthenticationError("Missing bearer token"))
    try:
        user_id = read_access_token(token.strip())
        UserService(db).get(user_id)
    except NotFoundError as exc:
        raise http_error(AuthenticationError("Invalid token")) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return user_id


def period_from_query(
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> Period:
    try:
        return resolve_period(period, start, end, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def dump(model, obj, relations: Optional[dict] = None, include: tuple[str, ...] = ()):
    exclude = {name for name in (relations or {}) if name not in include}
    return model.model_validate(obj).model_dump(mode="json", exclude=exclude)


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


@app.post("/auth/register", status_code=201)
def register(payload: UserIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).register(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    out = TokenOut(token=issue_access_token(user.id), user=UserOut.model_validate(user))
    return out.model_dump(mode="json")


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).authenticate(payload.email, payload.password)
    except ValueError as exc:
        raise http_error(exc) from exc
    out = TokenOut(token=issue_access_token(user.id), user=UserOut.model_validate(user))
    return out.model_dump(mode="json")


@app.get("/users/me")
def me(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return dump(UserOut, UserService(db).get(user_id))


@app.get("/accounts")
def list_accounts(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return [dump(BankAccountOut, a) for a in AccountService(db, user_id).list_all()]


@app.post("/accounts", status_code=201)
def create_account(
    payload: BankAccountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(BankAccountOut, account)


@app.get("/accounts/{account_id}")
def get_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, user_id).get(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(BankAccountOut, account)


@app.put("/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: BankAccountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, user_id).update(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(BankAccountOut, account)


@app.get("/categories")
def list_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return [dump(CategoryOut, c) for c in CategoryService(db, user_id).list_all()]


@app.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(CategoryOut, category)


@app.get("/categories/{category_id}")
def get_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user_id).get(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(CategoryOut, category)


@app.put("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user_id).update(category_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(CategoryOut, category)


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/expenses")
def list_expenses(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    bank_account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    include: Optional[str] = Query(default=None),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    filters = ExpenseFilters(
        start_date=start_date,
        end_date=end_date,
        bank_account_id=bank_account_id,
        category_id=category_id,
    )
    try:
        relations = parse_include(include, EXPENSE_RELATIONS)
        expenses = ExpenseService(db, user_id).list(filters, include=relations)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [dump(ExpenseOut, e, EXPENSE_RELATIONS, relations) for e in expenses]


@app.post("/expenses", status_code=201)
def create_expense(
    payload: ExpenseIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        expense = ExpenseService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(ExpenseOut, expense, EXPENSE_RELATIONS)


@app.get("/expenses/summary")
def expense_summary(
    period: Period = Depends(period_from_query),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return ExpenseService(db, user_id).summary(period.start, period.end)


@app.get("/expenses/recurring")
def list_recurring(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    templates = RecurringExpenseService(db, user_id).list_active()
    return [dump(RecurringExpenseOut, t) for t in templates]


@app.post("/expenses/recurring", status_code=201)
def create_recurring(
    payload: RecurringExpenseIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        template = RecurringExpenseService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(RecurringExpenseOut, template)


@app.delete("/expenses/recurring/{recurring_id}", status_code=204)
def deactivate_recurring(
    recurring_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        RecurringExpenseService(db, user_id).deactivate(recurring_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/expenses/{expense_id}")
def get_expense(
    expense_id: int,
    include: Optional[str] = Query(default=None),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        relations = parse_include(include, EXPENSE_RELATIONS)
        expense = ExpenseService(db, user_id).get(expense_id, include=relations)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(ExpenseOut, expense, EXPENSE_RELATIONS, relations)


@app.put("/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    payload: ExpenseUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        expense = ExpenseService(db, user_id).update(expense_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(ExpenseOut, expense, EXPENSE_RELATIONS)


@app.delete("/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        ExpenseService(db, user_id).delete(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/deposits")
def list_deposits(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    bank_account_id: Optional[int] = None,
    deposit_type_id: Optional[int] = None,
    include: Optional[str] = Query(default=None),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    filters = DepositFilters(
        start_date=start_date,
        end_date=end_date,
        bank_account_id=bank_account_id,
        deposit_type_id=deposit_type_id,
    )
    try:
        relations = parse_include(include, DEPOSIT_RELATIONS)
        deposits = DepositService(db, user_id).list(filters, include=relations)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [dump(DepositOut, d, DEPOSIT_RELATIONS, relations) for d in deposits]


@app.post("/deposits", status_code=201)
def create_deposit(
    payload: DepositIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        deposit = DepositService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(DepositOut, deposit, DEPOSIT_RELATIONS)


@app.get("/deposits/summary")
def deposit_summary(
    period: Period = Depends(period_from_query),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return DepositService(db, user_id).summary(period.start, period.end)


@app.get("/deposits/types")
def list_deposit_types(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return [dump(DepositTypeOut, t) for t in DepositTypeService(db).list_all()]


@app.post("/deposits/types", status_code=201)
def create_deposit_type(
    payload: DepositTypeIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        deposit_type = DepositTypeService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(DepositTypeOut, deposit_type)


@app.get("/deposits/{deposit_id}")
def get_deposit(
    deposit_id: int,
    include: Optional[str] = Query(default=None),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        relations = parse_include(include, DEPOSIT_RELATIONS)
        deposit = DepositService(db, user_id).get(deposit_id, include=relations)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(DepositOut, deposit, DEPOSIT_RELATIONS, relations)


@app.put("/deposits/{deposit_id}")
def update_deposit(
    deposit_id: int,
    payload: DepositUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        deposit = DepositService(db, user_id).update(deposit_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(DepositOut, deposit, DEPOSIT_RELATIONS)


@app.delete("/deposits/{deposit_id}", status_code=204)
def delete_deposit(
    deposit_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        DepositService(db, user_id).delete(deposit_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/budgets")
def list_budgets(
    year: Optional[int] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return [dump(BudgetOut, b) for b in BudgetService(db, user_id).list_budgets(year)]


@app.post("/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, user_id).create_budget(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(BudgetOut, budget)


@app.get("/budgets/current")
def current_budget(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    budget = BudgetService(db, user_id).get_current_budget()
    if budget is None:
        raise HTTPException(status_code=404, detail="No budget for the current month")
    return dump(BudgetOut, budget)


@app.get("/budgets/summary")
def budget_summary(
    year: Optional[int] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).get_budget_summary(year or local_today().year)


@app.get("/budgets/alerts")
def list_budget_alerts(
    is_read: Optional[bool] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    alerts = BudgetService(db, user_id).get_budget_alerts(is_read=is_read)
    return [dump(BudgetAlertOut, a) for a in alerts]


@app.put("/budgets/alerts/{alert_id}/read")
def mark_alert_read(
    alert_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        alert = BudgetService(db, user_id).mark_alert_as_read(alert_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(BudgetAlertOut, alert)


@app.get("/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, user_id).get_budget(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(BudgetOut, budget)


@app.put("/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, user_id).update_budget(budget_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(BudgetOut, budget)


@app.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        BudgetService(db, user_id).delete_budget(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/budgets/{budget_id}/recalc")
def recalculate_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        result = BudgetService(db, user_id).recalculate_budget_spending(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "budget_id": result.budget_id,
        "spent_cents": result.spent_cents,
        "alerts_created": [dump(BudgetAlertOut, a) for a in result.alerts.created],
        "alert_error": result.alerts.error,
    }


@app.get("/receipts")
def list_receipts(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return [dump(ReceiptOut, r) for r in ReceiptService(db, user_id).list_all()]


@app.post("/receipts", status_code=201)
def ingest_receipt(
    payload: ReceiptIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        receipt = ReceiptService(db, user_id).ingest(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(ReceiptOut, receipt)


@app.get("/receipts/{receipt_id}")
def get_receipt(
    receipt_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        receipt = ReceiptService(db, user_id).get(receipt_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(ReceiptOut, receipt)


@app.delete("/receipts/{receipt_id}", status_code=204)
def delete_receipt(
    receipt_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        ReceiptService(db, user_id).delete(receipt_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/admin/jobs/recurring")
def run_recurring_job(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    posted = RecurringEngine(db).post_due()
    logger.info(f"recurring_job: source=admin user_id={user_id} posted={len(posted)}")
    return {"posted": len(posted), "expense_ids": [e.id for e in posted]}


@app.post("/admin/jobs/budget-thresholds")
def run_budget_thresholds_job(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    results = recalculate_all_budgets(db)
    logger.info(f"budget_job: source=admin user_id={user_id} budgets={len(results)}")
    return {"results": results}
