from datetime import date, datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

import structlog
from fastapi import FastAPI, Header, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .auth_utils import verify_cron_secret
from .config import settings
from .errors import AccessDeniedError, LedgerError
from .logging_setup import configure_logging
from .persistence import SqlPersistence, get_persistence
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    CategoryAmount,
    CategoryCreate,
    CategoryResponse,
    CategoryUpdate,
    HealthResponse,
    ReconciliationResponse,
    RecurringRunResponse,
    RecurringTransactionCreate,
    RecurringTransactionResponse,
    RecurringTransactionUpdate,
    ReportSummaryResponse,
    TransactionCreate,
    TransactionPage,
    TransactionQuery,
    TransactionResponse,
    TransactionType,
    TransactionUpdate,
    TrendInterval,
    TrendPoint,
    WalletCreate,
    WalletResponse,
    WalletShareCreate,
    WalletShareResponse,
    WalletUpdate,
)
from .services import reports
from .services.recurring import new_rule_row, reschedule, run_due_recurrences
from .services.schedule import ensure_day

app = FastAPI(
    title="Budget Tracker API",
    version="0.1.0",
    description="Wallets, categories, ledger entries and recurring transactions.",
)

logger = structlog.get_logger(__name__)
persistence = get_persistence()

# Request field -> rule column. Fields in NOT_NULL_RULE_FIELDS cannot be cleared.
RULE_FIELDS = {
    "name": "name",
    "amount": "amount",
    "frequency": "frequency",
    "transactionType": "transaction_type",
    "categoryId": "category_id",
    "description": "description",
    "isActive": "is_active",
    "endDate": "end_date",
    "cycleDayOfMonth": "cycle_day_of_month",
    "cycleDayOfWeek": "cycle_day_of_week",
}
NOT_NULL_RULE_FIELDS = {"name", "amount", "frequency", "transactionType", "categoryId", "isActive"}


def build_error_response(details: list[ApiErrorDetail], message: str = "Invalid request payload") -> JSONResponse:
    payload = ApiErrorResponse(
        error=ApiErrorPayload(code="VALIDATION_ERROR", message=message, details=details)
    )
    return JSONResponse(status_code=422, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request.failed", path=request.url.path, code=exc.code, error=exc.message)
    payload = ApiErrorResponse(error=ApiErrorPayload(code=exc.code, message=exc.message))
    return JSONResponse(status_code=exc.status_code, content=payload.model_dump(exclude={"error": {"details"}}))


@app.on_event("startup")
async def on_startup() -> None:
    configure_logging()
    if isinstance(persistence, SqlPersistence):
        persistence.create_schema()
    logger.info("app.started", storage=persistence.backend)


def _require_user(x_user_id: str | None) -> UUID:
    raw = x_user_id or settings.default_user_id
    try:
        return UUID(raw)
    except ValueError:
        raise ValueError("X-User-Id must be a UUID") from None


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _wallet_out(row: dict[str, Any]) -> WalletResponse:
    return WalletResponse(
        id=row["id"],
        ownerId=row["user_id"],
        name=row["name"],
        currency=row["currency"],
        balance=row["balance"],
        createdAt=row["created_at"],
    )


def _category_out(row: dict[str, Any]) -> CategoryResponse:
    return CategoryResponse(id=row["id"], walletId=row["wallet_id"], name=row["name"], type=row["type"])


def _transaction_out(row: dict[str, Any]) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        walletId=row["wallet_id"],
        userId=row["user_id"],
        type=row["type"],
        amount=row["amount"],
        categoryId=row["category_id"],
        description=row.get("description"),
        occurredOn=row["date"],
        recurringTransactionId=row.get("recurring_transaction_id"),
    )


def _rule_out(row: dict[str, Any]) -> RecurringTransactionResponse:
    return RecurringTransactionResponse(
        id=row["id"],
        walletId=row["wallet_id"],
        userId=row["user_id"],
        name=row["name"],
        amount=row["amount"],
        frequency=row["frequency"],
        transactionType=row["transaction_type"],
        categoryId=row["category_id"],
        description=row.get("description"),
        startDate=row["start_date"],
        endDate=row.get("end_date"),
        isActive=row["is_active"],
        cycleDayOfMonth=row.get("cycle_day_of_month"),
        cycleDayOfWeek=row.get("cycle_day_of_week"),
        lastRunAt=row.get("last_run_at"),
        nextRunAt=row.get("next_run_at"),
    )


@app.get("/api/v1/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", storage=persistence.backend)


@app.api_route("/api/cron/process-recurring-transactions", methods=["GET", "POST"], response_model=None)
async def process_recurring_transactions(authorization: str | None = Header(default=None)) -> JSONResponse:
    if not verify_cron_secret(authorization, settings.cron_secret):
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})
    try:
        stats = run_due_recurrences(persistence)
    except Exception as exc:
        logger.exception("recurring.batch.aborted")
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
    payload = RecurringRunResponse(
        success=True,
        processedCount=stats.processed_count,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(content=jsonable_encoder(payload))


@app.post("/api/v1/wallets", response_model=WalletResponse, status_code=201)
async def create_wallet(payload: WalletCreate, x_user_id: str | None = Header(default=None)) -> WalletResponse:
    user_id = _require_user(x_user_id)
    return _wallet_out(persistence.create_wallet(user_id, payload))


@app.get("/api/v1/wallets", response_model=list[WalletResponse])
async def list_wallets(x_user_id: str | None = Header(default=None)) -> list[WalletResponse]:
    user_id = _require_user(x_user_id)
    return [_wallet_out(row) for row in persistence.list_wallets(user_id)]


@app.get("/api/v1/wallets/{wallet_id}", response_model=WalletResponse)
async def get_wallet(wallet_id: UUID, x_user_id: str | None = Header(default=None)) -> WalletResponse:
    user_id = _require_user(x_user_id)
    return _wallet_out(persistence.check_wallet_access(user_id, wallet_id))


def _require_owner(user_id: UUID, wallet_id: UUID, action: str) -> dict[str, Any]:
    wallet = persistence.get_wallet(wallet_id)
    if wallet["user_id"] != user_id:
        raise AccessDeniedError(f"only the owner can {action}")
    return wallet


@app.put("/api/v1/wallets/{wallet_id}", response_model=WalletResponse)
async def update_wallet(
    wallet_id: UUID,
    payload: WalletUpdate,
    x_user_id: str | None = Header(default=None),
) -> WalletResponse:
    user_id = _require_user(x_user_id)
    _require_owner(user_id, wallet_id, "update a wallet")
    return _wallet_out(persistence.update_wallet(wallet_id, payload))


@app.delete("/api/v1/wallets/{wallet_id}", status_code=204)
async def delete_wallet(wallet_id: UUID, x_user_id: str | None = Header(default=None)) -> Response:
    user_id = _require_user(x_user_id)
    _require_owner(user_id, wallet_id, "delete a wallet")
    persistence.delete_wallet(wallet_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/v1/wallets/{wallet_id}/shares", response_model=WalletShareResponse, status_code=201)
async def share_wallet(
    wallet_id: UUID,
    payload: WalletShareCreate,
    x_user_id: str | None = Header(default=None),
) -> WalletShareResponse:
    user_id = _require_user(x_user_id)
    _require_owner(user_id, wallet_id, "share a wallet")
    row = persistence.share_wallet(wallet_id, payload)
    return WalletShareResponse(walletId=row["wallet_id"], userId=row["user_id"], permission=row["permission"])


@app.delete("/api/v1/wallets/{wallet_id}/shares/{shared_user_id}", status_code=204)
async def remove_share(
    wallet_id: UUID,
    shared_user_id: UUID,
    x_user_id: str | None = Header(default=None),
) -> Response:
    user_id = _require_user(x_user_id)
    _require_owner(user_id, wallet_id, "remove access to a wallet")
    persistence.remove_share(wallet_id, shared_user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/v1/wallets/{wallet_id}/reconciliation", response_model=ReconciliationResponse)
async def reconcile_wallet(wallet_id: UUID, x_user_id: str | None = Header(default=None)) -> ReconciliationResponse:
    user_id = _require_user(x_user_id)
    wallet = persistence.check_wallet_access(user_id, wallet_id)
    ledger = persistence.ledger_balance(wallet_id)
    return ReconciliationResponse(
        walletId=wallet_id,
        balance=wallet["balance"],
        ledgerBalance=ledger,
        consistent=wallet["balance"] == ledger,
    )


def _report_period(start: date, end: date) -> None:
    if end < start:
        raise ValueError("endDate must be >= startDate")


@app.get("/api/v1/wallets/{wallet_id}/reports/summary", response_model=ReportSummaryResponse)
async def report_summary(
    wallet_id: UUID,
    startDate: date,
    endDate: date,
    x_user_id: str | None = Header(default=None),
) -> ReportSummaryResponse:
    user_id = _require_user(x_user_id)
    persistence.check_wallet_access(user_id, wallet_id)
    _report_period(startDate, endDate)
    return ReportSummaryResponse(**reports.summary(persistence, wallet_id, startDate, endDate))


@app.get("/api/v1/wallets/{wallet_id}/reports/by-category", response_model=list[CategoryAmount])
async def report_by_category(
    wallet_id: UUID,
    startDate: date,
    endDate: date,
    type: str | None = None,
    x_user_id: str | None = Header(default=None),
) -> list[CategoryAmount]:
    user_id = _require_user(x_user_id)
    persistence.check_wallet_access(user_id, wallet_id)
    _report_period(startDate, endDate)
    kind = TransactionType(type.upper()) if type else None
    rows = reports.by_category(persistence, wallet_id, startDate, endDate, kind)
    return [CategoryAmount(**row) for row in rows]


@app.get("/api/v1/wallets/{wallet_id}/reports/trends", response_model=list[TrendPoint])
async def report_trends(
    wallet_id: UUID,
    startDate: date,
    endDate: date,
    interval: TrendInterval = TrendInterval.monthly,
    x_user_id: str | None = Header(default=None),
) -> list[TrendPoint]:
    user_id = _require_user(x_user_id)
    persistence.check_wallet_access(user_id, wallet_id)
    _report_period(startDate, endDate)
    return [TrendPoint(**row) for row in reports.trends(persistence, wallet_id, startDate, endDate, interval)]


@app.post("/api/v1/wallets/{wallet_id}/categories", response_model=CategoryResponse, status_code=201)
async def create_category(
    wallet_id: UUID,
    payload: CategoryCreate,
    x_user_id: str | None = Header(default=None),
) -> CategoryResponse:
    user_id = _require_user(x_user_id)
    persistence.check_wallet_access(user_id, wallet_id, require_edit=True)
    return _category_out(persistence.create_category(wallet_id, payload))


@app.get("/api/v1/wallets/{wallet_id}/categories", response_model=list[CategoryResponse])
async def list_categories(wallet_id: UUID, x_user_id: str | None = Header(default=None)) -> list[CategoryResponse]:
    user_id = _require_user(x_user_id)
    persistence.check_wallet_access(user_id, wallet_id)
    return [_category_out(row) for row in persistence.list_categories(wallet_id)]


@app.put("/api/v1/categories/{category_id}", response_model=CategoryResponse)
async def update_category(
    category_id: UUID,
    payload: CategoryUpdate,
    x_user_id: str | None = Header(default=None),
) -> CategoryResponse:
    user_id = _require_user(x_user_id)
    current = persistence.get_category(category_id)
    persistence.check_wallet_access(user_id, current["wallet_id"], require_edit=True)
    return _category_out(persistence.update_category(category_id, payload))


@app.delete("/api/v1/categories/{category_id}", status_code=204)
async def delete_category(category_id: UUID, x_user_id: str | None = Header(default=None)) -> Response:
    user_id = _require_user(x_user_id)
    current = persistence.get_category(category_id)
    persistence.check_wallet_access(user_id, current["wallet_id"], require_edit=True)
    persistence.delete_category(category_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/v1/transactions", response_model=TransactionResponse, status_code=201)
async def create_transaction(
    payload: TransactionCreate,
    x_user_id: str | None = Header(default=None),
) -> TransactionResponse:
    user_id = _require_user(x_user_id)
    persistence.check_wallet_access(user_id, payload.walletId, require_edit=True)
    return _transaction_out(persistence.create_transaction(user_id, payload))


@app.get("/api/v1/wallets/{wallet_id}/transactions", response_model=TransactionPage)
async def list_transactions(
    wallet_id: UUID,
    type: str | None = None,
    categoryId: UUID | None = None,
    startDate: date | None = None,
    endDate: date | None = None,
    limit: int = Query(default=10, ge=1, le=100),
    cursor: UUID | None = None,
    x_user_id: str | None = Header(default=None),
) -> TransactionPage:
    user_id = _require_user(x_user_id)
    persistence.check_wallet_access(user_id, wallet_id)
    query = TransactionQuery(
        type=type,
        categoryId=categoryId,
        startDate=startDate,
        endDate=endDate,
        limit=limit,
        cursor=cursor,
    )
    rows = persistence.list_transactions(wallet_id, query)
    next_cursor = rows.pop()["id"] if len(rows) > limit else None
    return TransactionPage(items=[_transaction_out(row) for row in rows], nextCursor=next_cursor)


@app.put("/api/v1/transactions/{transaction_id}", response_model=TransactionResponse)
async def update_transaction(
    transaction_id: UUID,
    payload: TransactionUpdate,
    x_user_id: str | None = Header(default=None),
) -> TransactionResponse:
    user_id = _require_user(x_user_id)
    current = persistence.get_transaction(transaction_id)
    persistence.check_wallet_access(user_id, current["wallet_id"], require_edit=True)
    return _transaction_out(persistence.update_transaction(transaction_id, payload))


@app.delete("/api/v1/transactions/{transaction_id}", status_code=204)
async def delete_transaction(transaction_id: UUID, x_user_id: str | None = Header(default=None)) -> Response:
    user_id = _require_user(x_user_id)
    current = persistence.get_transaction(transaction_id)
    persistence.check_wallet_access(user_id, current["wallet_id"], require_edit=True)
    persistence.delete_transaction(transaction_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/v1/recurring-transactions", response_model=RecurringTransactionResponse, status_code=201)
async def create_recurring_transaction(
    payload: RecurringTransactionCreate,
    x_user_id: str | None = Header(default=None),
) -> RecurringTransactionResponse:
    user_id = _require_user(x_user_id)
    persistence.check_wallet_access(user_id, payload.walletId, require_edit=True)
    return _rule_out(persistence.create_rule(new_rule_row(user_id, payload)))


@app.get("/api/v1/wallets/{wallet_id}/recurring-transactions", response_model=list[RecurringTransactionResponse])
async def list_recurring_transactions(
    wallet_id: UUID,
    x_user_id: str | None = Header(default=None),
) -> list[RecurringTransactionResponse]:
    user_id = _require_user(x_user_id)
    persistence.check_wallet_access(user_id, wallet_id)
    return [_rule_out(row) for row in persistence.list_rules(wallet_id)]


@app.put("/api/v1/recurring-transactions/{rule_id}", response_model=RecurringTransactionResponse)
async def update_recurring_transaction(
    rule_id: UUID,
    payload: RecurringTransactionUpdate,
    x_user_id: str | None = Header(default=None),
) -> RecurringTransactionResponse:
    user_id = _require_user(x_user_id)
    rule = persistence.get_rule(rule_id)
    persistence.check_wallet_access(user_id, rule["wallet_id"], require_edit=True)
    changes = {
        RULE_FIELDS[name]: _plain(value)
        for name, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or name not in NOT_NULL_RULE_FIELDS
    }
    if changes.get("end_date") is not None and changes["end_date"] < ensure_day(rule["start_date"]):
        raise ValueError("endDate must be >= startDate")
    return _rule_out(persistence.update_rule(rule_id, reschedule(rule, changes)))


@app.delete("/api/v1/recurring-transactions/{rule_id}", status_code=204)
async def delete_recurring_transaction(rule_id: UUID, x_user_id: str | None = Header(default=None)) -> Response:
    user_id = _require_user(x_user_id)
    rule = persistence.get_rule(rule_id)
    persistence.check_wallet_access(user_id, rule["wallet_id"], require_edit=True)
    persistence.delete_rule(rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
