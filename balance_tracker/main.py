import logging
import os
import re
from dataclasses import asdict
from datetime import date
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import create_engine, insert, select
from sqlalchemy.exc import IntegrityError

from balance_tracker.aggregate_report import monthly_expense_total, monthly_income_total
from balance_tracker.balance_calculator import calculate_balances
from balance_tracker.currency_conversion import (
    NBU_API_URL,
    ConversionUnavailable,
    CurrencyConverter,
    NbuRateProvider,
    RateNotFound,
)
from balance_tracker.finance_items import Currency, ExpensePeriod, IncomePeriod
from balance_tracker.logging_setup import configure_logging
from balance_tracker.storage import (
    ACCOUNTS,
    RECURRING_EXPENSES,
    RECURRING_INCOMES,
    FinanceStore,
    LocalFinanceStore,
    SqlFinanceStore,
    load_all,
    metadata,
    users,
)
from balance_tracker.transaction_generator import transaction_history

configure_logging()
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

database_url = os.getenv("DATABASE_URL", "sqlite:///./balance_tracker.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)

LOCAL_STORE_PATH = os.getenv("LOCAL_STORE_PATH", "./local_finance_items.json")
RATE_PROVIDER = NbuRateProvider(
    base_url=os.getenv("NBU_API_URL", NBU_API_URL),
    cache_ttl_seconds=int(os.getenv("RATE_CACHE_TTL_SECONDS", "3600")),
)
CONVERTER = CurrencyConverter(primary=RATE_PROVIDER)

RATE_CACHE_CONTROL = "s-maxage=3600, stale-while-revalidate=86400"
VALCODE_PATTERN = re.compile(r"[A-Z]{3}")


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str


class AccountPayload(BaseModel):
    name: str | None = None
    amount: Decimal | None = None
    currency: str | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountPayload", partial: bool = False) -> dict:
        values = payload.model_dump(exclude_unset=partial, exclude_none=partial)
        if "name" in values or not partial:
            values["name"] = (values.get("name") or "").strip()
            if not values["name"]:
                raise ValueError("Account name required.")
        if not partial and values.get("amount") is None:
            raise ValueError("Amount required.")
        if "currency" in values or not partial:
            values["currency"] = Currency.validate(values.get("currency") or "USD")
        return values


class RecurringPayload(BaseModel):
    name: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    period: str | None = None
    anchor_date: date | None = None
    account_id: str | None = None

    @classmethod
    def validate_payload(
        cls,
        payload: "RecurringPayload",
        period_type: type[ExpensePeriod] | type[IncomePeriod],
        partial: bool = False,
    ) -> dict:
        values = payload.model_dump(exclude_unset=partial)
        if "name" in values or not partial:
            values["name"] = (values.get("name") or "").strip()
            if not values["name"]:
                raise ValueError("Name required.")
        if "amount" in values or not partial:
            if values.get("amount") is None or values["amount"] <= 0:
                raise ValueError("Amount must be greater than zero.")
        if "currency" in values or not partial:
            values["currency"] = Currency.validate(values.get("currency") or "USD")
        if "period" in values or not partial:
            values["period"] = period_type.validate(values.get("period") or "")
        if "account_id" in values:
            values["account_id"] = (values["account_id"] or "").strip() or None
        return values


class AccountResponse(BaseModel):
    id: str
    name: str
    amount: Decimal
    currency: str


class AccountBalanceResponse(AccountResponse):
    calculated_amount: Decimal


class BalanceResponse(BaseModel):
    date: date
    total: Decimal
    accounts: list[AccountBalanceResponse]


class RecurringResponse(BaseModel):
    id: str
    name: str
    amount: Decimal
    currency: str
    period: str
    anchor_date: date | None = None
    account_id: str | None = None


class TransactionResponse(BaseModel):
    id: str
    kind: str
    source_id: str
    account_id: str
    amount: Decimal
    currency: str
    date: date
    description: str


class SummaryResponse(BaseModel):
    monthly_subscriptions: Decimal
    monthly_revenue: Decimal


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def get_store(x_user_id: str | None) -> FinanceStore:
    if not x_user_id:
        return LocalFinanceStore(LOCAL_STORE_PATH)
    return SqlFinanceStore(engine, get_user_id(x_user_id))


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    try:
        with engine.begin() as conn:
            conn.execute(insert(users).values(email=email, hashed_password=hashed_password))
            row = conn.execute(
                select(users.c.id, users.c.email).where(users.c.email == email)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("Created user %s", row["id"])
    return UserResponse(id=row["id"], email=row["email"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"])


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    store = get_store(x_user_id)
    return [AccountResponse(**asdict(item)) for item in store.get_all(ACCOUNTS)]


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    store = get_store(x_user_id)
    try:
        values = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return AccountResponse(**asdict(store.create(ACCOUNTS, values)))


@app.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: str, payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    store = get_store(x_user_id)
    try:
        values = AccountPayload.validate_payload(payload, partial=True)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    item = store.update(ACCOUNTS, account_id, values)
    if item is None:
        raise HTTPException(status_code=404, detail="Account not found.")
    return AccountResponse(**asdict(item))


@app.delete("/accounts/{account_id}")
def delete_account(account_id: str, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    store = get_store(x_user_id)
    if not store.delete(ACCOUNTS, account_id):
        raise HTTPException(status_code=404, detail="Account not found.")
    return {"status": "deleted"}


@app.get("/subscriptions", response_model=list[RecurringResponse])
def list_subscriptions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringResponse]:
    store = get_store(x_user_id)
    return [RecurringResponse(**asdict(item)) for item in store.get_all(RECURRING_EXPENSES)]


@app.post("/subscriptions", response_model=RecurringResponse)
def create_subscription(
    payload: RecurringPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RecurringResponse:
    store = get_store(x_user_id)
    try:
        values = RecurringPayload.validate_payload(payload, ExpensePeriod)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if values.get("anchor_date") is None:
        raise HTTPException(status_code=400, detail="Repetition date required.")
    return RecurringResponse(**asdict(store.create(RECURRING_EXPENSES, values)))


@app.put("/subscriptions/{subscription_id}", response_model=RecurringResponse)
def update_subscription(
    subscription_id: str,
    payload: RecurringPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringResponse:
    store = get_store(x_user_id)
    try:
        values = RecurringPayload.validate_payload(payload, ExpensePeriod, partial=True)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if "anchor_date" in values and values["anchor_date"] is None:
        raise HTTPException(status_code=400, detail="Repetition date required.")
    item = store.update(RECURRING_EXPENSES, subscription_id, values)
    if item is None:
        raise HTTPException(status_code=404, detail="Subscription not found.")
    return RecurringResponse(**asdict(item))


@app.delete("/subscriptions/{subscription_id}")
def delete_subscription(
    subscription_id: str, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    store = get_store(x_user_id)
    if not store.delete(RECURRING_EXPENSES, subscription_id):
        raise HTTPException(status_code=404, detail="Subscription not found.")
    return {"status": "deleted"}


@app.get("/revenues", response_model=list[RecurringResponse])
def list_revenues(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[RecurringResponse]:
    store = get_store(x_user_id)
    return [RecurringResponse(**asdict(item)) for item in store.get_all(RECURRING_INCOMES)]


@app.post("/revenues", response_model=RecurringResponse)
def create_revenue(
    payload: RecurringPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RecurringResponse:
    store = get_store(x_user_id)
    try:
        values = RecurringPayload.validate_payload(payload, IncomePeriod)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RecurringResponse(**asdict(store.create(RECURRING_INCOMES, values)))


@app.put("/revenues/{revenue_id}", response_model=RecurringResponse)
def update_revenue(
    revenue_id: str,
    payload: RecurringPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringResponse:
    store = get_store(x_user_id)
    try:
        values = RecurringPayload.validate_payload(payload, IncomePeriod, partial=True)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    item = store.update(RECURRING_INCOMES, revenue_id, values)
    if item is None:
        raise HTTPException(status_code=404, detail="Revenue not found.")
    return RecurringResponse(**asdict(item))


@app.delete("/revenues/{revenue_id}")
def delete_revenue(revenue_id: str, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    store = get_store(x_user_id)
    if not store.delete(RECURRING_INCOMES, revenue_id):
        raise HTTPException(status_code=404, detail="Revenue not found.")
    return {"status": "deleted"}


@app.get("/balances", response_model=BalanceResponse)
async def get_balances(
    target_date: date | None = Query(None, alias="date"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BalanceResponse:
    store = await run_in_threadpool(get_store, x_user_id)
    data = await run_in_threadpool(load_all, store)
    report = await calculate_balances(
        data.accounts,
        data.expenses,
        data.incomes,
        target_date or date.today(),
        CONVERTER,
    )
    return BalanceResponse(
        date=report.date,
        total=report.total,
        accounts=[
            AccountBalanceResponse(
                **asdict(balance.account),
                calculated_amount=balance.calculated_amount,
            )
            for balance in report.accounts
        ],
    )


@app.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    start_date: date = Query(..., alias="start"),
    end_date: date = Query(..., alias="end"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    store = await run_in_threadpool(get_store, x_user_id)
    data = await run_in_threadpool(load_all, store)
    history = await transaction_history(
        data.expenses, data.incomes, start_date, end_date, CONVERTER
    )
    return [TransactionResponse(**asdict(txn)) for txn in history]


@app.get("/summary", response_model=SummaryResponse)
async def get_summary(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SummaryResponse:
    store = await run_in_threadpool(get_store, x_user_id)
    data = await run_in_threadpool(load_all, store)
    return SummaryResponse(
        monthly_subscriptions=await monthly_expense_total(data.expenses, CONVERTER),
        monthly_revenue=await monthly_income_total(data.incomes, CONVERTER),
    )


@app.get("/nbu-rate")
async def get_nbu_rate(valcode: str | None = Query(None)) -> JSONResponse:
    if not valcode or not VALCODE_PATTERN.fullmatch(valcode):
        raise HTTPException(status_code=400, detail="Currency code must be 3 uppercase letters")
    try:
        quote = await RATE_PROVIDER.get_quote(valcode)
    except RateNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConversionUnavailable as exc:
        logger.error("NBU API error for %s: %s", valcode, exc)
        raise HTTPException(status_code=502, detail="NBU unavailable") from exc
    return JSONResponse(quote.as_payload(), headers={"Cache-Control": RATE_CACHE_CONTROL})
