import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal

from fastapi import FastAPI, File, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select

from spendcast.categorization import learn_from_transactions
from spendcast.date_cursor import format_frequency, utc_today
from spendcast.db import build_engine, categories, init_db, subcategories
from spendcast.forecast_generator import RecurringTemplate
from spendcast.forecast_lifecycle import (
    ForecastChanges,
    RecordNotFound,
    RecurringExpenseChanges,
    RecurringExpensePayload,
    bulk_confirm_forecasts,
    bulk_delete_forecasts,
    confirm_forecast,
    create_template,
    delete_template,
    extend_forecast_window,
    forecasts_for_template,
    get_template,
    list_templates,
    mature_due_forecasts,
    stop_template,
    upcoming_forecasts,
    update_forecast_occurrence,
    update_future_forecasts,
    update_template,
)
from spendcast.reconciliation import (
    MergePayload,
    check_for_forecast_matches,
    confirm_merge,
    keep_both,
)
from spendcast.split_calculator import (
    Participant,
    calculate_settlements,
    calculate_splits,
    validate_participants,
)
from spendcast.statement_import import commit_import
from spendcast.statement_parser import ImportRow, parse_statement_csv


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./spendcast.db")
engine = build_engine(database_url)

CRON_SECRET = os.getenv("CRON_SECRET")
DEFAULT_FORECAST_MONTHS = _int_env("DEFAULT_FORECAST_MONTHS", 6)
FORECAST_RUNWAY_MONTHS = _int_env("FORECAST_RUNWAY_MONTHS", 3)


@app.on_event("startup")
def startup() -> None:
    init_db(engine)


class SubcategoryResponse(BaseModel):
    id: int
    name: str


class CategoryResponse(BaseModel):
    id: int
    name: str
    color: str
    icon: str | None = None
    hint: str | None = None
    subcategories: list[SubcategoryResponse]


class RecurringExpenseCreatePayload(RecurringExpensePayload):
    forecast_months: int = DEFAULT_FORECAST_MONTHS


class RecurringExpenseResponse(BaseModel):
    id: int
    description: str
    amount: Decimal
    frequency: str
    frequency_label: str
    start_date: date
    end_date: date | None = None
    day_of_month: int | None = None
    day_of_week: int | None = None
    forecast_months: int
    category_id: int | None = None
    subcategory_id: int | None = None
    merchant_name: str | None = None
    tags: list[str]
    is_active: bool


class ForecastResponse(BaseModel):
    id: int
    description: str
    amount: Decimal
    date: date
    forecast_date: date | None = None
    recurring_expense_id: int | None = None
    is_forecast: bool
    category_id: int | None = None
    subcategory_id: int | None = None
    category_name: str | None = None
    category_color: str | None = None
    category_icon: str | None = None
    subcategory_name: str | None = None
    merchant_name: str | None = None


class FutureForecastChangesPayload(ForecastChanges):
    from_date: date

    def as_values(self) -> dict:
        values = super().as_values()
        values.pop("from_date", None)
        return values


class ForecastIdsPayload(BaseModel):
    ids: list[int]


class ForecastMatchResponse(BaseModel):
    row_index: int
    candidates: list[ForecastResponse]


class ImportPreviewResponse(BaseModel):
    rows: list[ImportRow]
    total_rows: int
    skipped_rows: int
    matches: list[ForecastMatchResponse]


class RowDecision(BaseModel):
    row_index: int
    forecast_id: int | None = None


class ImportCommitPayload(BaseModel):
    rows: list[ImportRow]
    merges: list[RowDecision] = []
    keep_both: list[RowDecision] = []
    statement_month: int | None = None
    statement_year: int | None = None


class ImportCommitResponse(BaseModel):
    inserted_count: int
    merged_count: int


class MergeRequest(BaseModel):
    forecast_id: int | None = None
    row: ImportRow


class SplitRequest(BaseModel):
    participants: list[Participant]
    total_amount: Decimal | None = None


class SplitCalculationResponse(BaseModel):
    participant_id: str
    name: str
    weight: Decimal
    amount_paid: Decimal
    share: Decimal
    balance: Decimal


class SettlementResponse(BaseModel):
    from_participant: str
    to_participant: str
    amount: Decimal
    from_participant_id: str
    to_participant_id: str


class SplitResponse(BaseModel):
    total_amount: Decimal
    splits: list[SplitCalculationResponse]
    settlements: list[SettlementResponse]


def get_user_id(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


def require_cron_auth(authorization: str | None, job: str) -> None:
    if CRON_SECRET and authorization != f"Bearer {CRON_SECRET}":
        logger.error("Unauthorized cron request to %s", job)
        raise HTTPException(status_code=401, detail="Unauthorized")


def template_response(template: RecurringTemplate) -> RecurringExpenseResponse:
    return RecurringExpenseResponse(
        id=template.id,
        description=template.description,
        amount=template.amount,
        frequency=template.frequency,
        frequency_label=format_frequency(
            template.frequency, template.day_of_month, template.day_of_week
        ),
        start_date=template.start_date,
        end_date=template.end_date,
        day_of_month=template.day_of_month,
        day_of_week=template.day_of_week,
        forecast_months=template.forecast_months,
        category_id=template.category_id,
        subcategory_id=template.subcategory_id,
        merchant_name=template.merchant_name,
        tags=template.tags,
        is_active=template.is_active,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories() -> list[CategoryResponse]:
    with engine.begin() as conn:
        category_rows = conn.execute(
            select(categories).order_by(categories.c.order, categories.c.id)
        ).mappings().all()
        sub_rows = conn.execute(
            select(subcategories).order_by(subcategories.c.id)
        ).mappings().all()
    grouped: dict[int, list[SubcategoryResponse]] = {}
    for row in sub_rows:
        grouped.setdefault(row["category_id"], []).append(
            SubcategoryResponse(id=row["id"], name=row["name"])
        )
    return [
        CategoryResponse(
            id=row["id"],
            name=row["name"],
            color=row["color"],
            icon=row["icon"],
            hint=row["hint"],
            subcategories=grouped.get(row["id"], []),
        )
        for row in category_rows
    ]


@app.get("/recurring-expenses", response_model=list[RecurringExpenseResponse])
def list_recurring_expenses(
    include_inactive: bool = False,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringExpenseResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        templates = list_templates(conn, user_id, include_inactive=include_inactive)
    return [template_response(template) for template in templates]


@app.post("/recurring-expenses", response_model=RecurringExpenseResponse)
def create_recurring_expense(
    payload: RecurringExpenseCreatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            template = create_template(conn, user_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return template_response(template)


@app.get("/recurring-expenses/{template_id}", response_model=RecurringExpenseResponse)
def get_recurring_expense(
    template_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RecurringExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            template = get_template(conn, user_id, template_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return template_response(template)


@app.put("/recurring-expenses/{template_id}", response_model=RecurringExpenseResponse)
def update_recurring_expense(
    template_id: int,
    payload: RecurringExpenseChanges,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            template = update_template(conn, user_id, template_id, payload)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return template_response(template)


@app.post("/recurring-expenses/{template_id}/stop")
def stop_recurring_expense(
    template_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            deleted = stop_template(conn, user_id, template_id, utc_today())
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "stopped", "deleted_forecasts": deleted}


@app.delete("/recurring-expenses/{template_id}")
def delete_recurring_expense(
    template_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            deleted = delete_template(conn, user_id, template_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "deleted", "deleted_forecasts": deleted}


@app.get(
    "/recurring-expenses/{template_id}/forecasts",
    response_model=list[ForecastResponse],
)
def list_template_forecasts(
    template_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[ForecastResponse]:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            rows = forecasts_for_template(conn, user_id, template_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [ForecastResponse(**row) for row in rows]


@app.put("/recurring-expenses/{template_id}/forecasts/future")
def update_template_future_forecasts(
    template_id: int,
    payload: FutureForecastChangesPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            get_template(conn, user_id, template_id)
            count = update_future_forecasts(
                conn, user_id, template_id, payload.from_date, payload
            )
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "updated", "count": count}


@app.get("/forecasts/upcoming", response_model=list[ForecastResponse])
def list_upcoming_forecasts(
    days: int = 30, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[ForecastResponse]:
    user_id = get_user_id(x_user_id)
    if days <= 0:
        raise HTTPException(status_code=400, detail="Days must be greater than zero.")
    with engine.begin() as conn:
        rows = upcoming_forecasts(conn, user_id, utc_today(), days)
    return [ForecastResponse(**row) for row in rows]


@app.put("/forecasts/{forecast_id}")
def update_forecast(
    forecast_id: int,
    payload: ForecastChanges,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            update_forecast_occurrence(conn, user_id, forecast_id, payload)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "updated"}


@app.post("/forecasts/{forecast_id}/confirm")
def confirm_single_forecast(
    forecast_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            confirm_forecast(conn, user_id, forecast_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "confirmed"}


@app.post("/forecasts/bulk-confirm")
def confirm_forecasts(
    payload: ForecastIdsPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        count = bulk_confirm_forecasts(conn, user_id, payload.ids)
    return {"status": "confirmed", "count": count}


@app.post("/forecasts/bulk-delete")
def delete_forecasts(
    payload: ForecastIdsPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        count = bulk_delete_forecasts(conn, user_id, payload.ids)
    return {"status": "deleted", "count": count}


@app.post("/import/preview", response_model=ImportPreviewResponse)
def preview_import(
    file: UploadFile = File(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ImportPreviewResponse:
    user_id = get_user_id(x_user_id)
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="CSV file required.")
    contents = file.file.read()
    try:
        decoded = contents.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded.") from exc
    try:
        parsed = parse_statement_csv(decoded)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        matches = check_for_forecast_matches(conn, user_id, parsed.rows)
    return ImportPreviewResponse(
        rows=parsed.rows,
        total_rows=parsed.total_rows,
        skipped_rows=parsed.skipped_rows,
        matches=[
            ForecastMatchResponse(
                row_index=match.row_index,
                candidates=[ForecastResponse(**candidate) for candidate in match.candidates],
            )
            for match in matches
        ],
    )


@app.post("/import/commit", response_model=ImportCommitResponse)
def commit_statement_import(
    payload: ImportCommitPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ImportCommitResponse:
    user_id = get_user_id(x_user_id)
    if not payload.rows:
        raise HTTPException(status_code=400, detail="No transactions to import.")

    merged_indexes = set()
    for decision in payload.merges + payload.keep_both:
        if not 0 <= decision.row_index < len(payload.rows):
            raise HTTPException(
                status_code=400,
                detail=f"Row {decision.row_index} does not exist.",
            )
        if decision.forecast_id is None:
            raise HTTPException(
                status_code=400,
                detail=f"Row {decision.row_index} has no forecast selected.",
            )
    for decision in payload.merges:
        if decision.row_index in merged_indexes:
            raise HTTPException(
                status_code=400,
                detail=f"Row {decision.row_index} can only be merged once.",
            )
        merged_indexes.add(decision.row_index)

    try:
        with engine.begin() as conn:
            for decision in payload.merges:
                row = payload.rows[decision.row_index]
                confirm_merge(
                    conn, user_id, decision.forecast_id, MergePayload.from_import_row(row)
                )
            for decision in payload.keep_both:
                keep_both(conn, user_id, decision.forecast_id, payload.rows[decision.row_index])
            remaining = [
                row for index, row in enumerate(payload.rows) if index not in merged_indexes
            ]
            inserted = commit_import(
                conn,
                user_id,
                remaining,
                statement_month=payload.statement_month,
                statement_year=payload.statement_year,
            )
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return ImportCommitResponse(inserted_count=inserted, merged_count=len(merged_indexes))


@app.post("/import/merge")
def merge_import_row(
    payload: MergeRequest, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        with engine.begin() as conn:
            confirm_merge(
                conn, user_id, payload.forecast_id, MergePayload.from_import_row(payload.row)
            )
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "merged"}


@app.post("/categorization/learn")
def learn_categories(x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        learned = learn_from_transactions(conn, user_id)
    return {"patterns_learned": learned}


@app.post("/split-bills/calculate", response_model=SplitResponse)
def calculate_split(payload: SplitRequest) -> SplitResponse:
    try:
        validate_participants(payload.participants, require_payer=False)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    total_amount = payload.total_amount
    if total_amount is None:
        total_amount = sum((p.amount_paid for p in payload.participants), Decimal("0"))
    if total_amount < 0:
        raise HTTPException(status_code=400, detail="Total amount cannot be negative.")

    splits = calculate_splits(payload.participants, total_amount)
    settlements = calculate_settlements(splits)
    return SplitResponse(
        total_amount=total_amount,
        splits=[
            SplitCalculationResponse(
                participant_id=split.participant_id,
                name=split.name,
                weight=split.weight,
                amount_paid=split.amount_paid,
                share=split.share,
                balance=split.balance,
            )
            for split in splits
        ],
        settlements=[
            SettlementResponse(
                from_participant=settlement.from_participant,
                to_participant=settlement.to_participant,
                amount=settlement.amount,
                from_participant_id=settlement.from_participant_id,
                to_participant_id=settlement.to_participant_id,
            )
            for settlement in settlements
        ],
    )


@app.get("/cron/extend-forecasts")
def cron_extend_forecasts(authorization: str | None = Header(None)):
    require_cron_auth(authorization, "extend-forecasts")
    logger.info("Starting forecast extension job")
    try:
        report = extend_forecast_window(
            engine, utc_today(), runway_months=FORECAST_RUNWAY_MONTHS
        )
    except Exception as exc:
        logger.exception("Forecast extension job failed")
        return JSONResponse(
            status_code=500, content={"error": "Job failed", "message": str(exc)}
        )
    return {
        "success": not report.failures,
        "message": (
            f"Extended forecasts for {report.extended_count}/{report.template_count} "
            f"templates ({report.created_count} new forecasts created)"
        ),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "created_count": report.created_count,
        "failures": [
            {"template_id": result.template_id, "error": result.error}
            for result in report.failures
        ],
    }


@app.get("/cron/convert-forecasts")
def cron_convert_forecasts(authorization: str | None = Header(None)):
    require_cron_auth(authorization, "convert-forecasts")
    logger.info("Starting forecast conversion job")
    try:
        with engine.begin() as conn:
            converted = mature_due_forecasts(conn, utc_today())
    except Exception as exc:
        logger.exception("Forecast conversion job failed")
        return JSONResponse(
            status_code=500, content={"error": "Job failed", "message": str(exc)}
        )
    return {
        "success": True,
        "message": f"Converted {converted} forecasts to real expenses",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "converted_count": converted,
    }
