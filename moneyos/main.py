import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from moneyos.auth import authenticate, decode_token, extract_bearer, issue_token, register_user
from moneyos.budget_aggregator import (
    BudgetSpec,
    delete_budget,
    list_budgets,
    recalculate,
    upsert_budget,
)
from moneyos.config import Settings
from moneyos.errors import MoneyOSError, StorageError
from moneyos.goals import create_goal, list_goals
from moneyos.ledger_store import LedgerStore, transactions
from moneyos.message_relay import pull_messages, push_message, verify_push_secret
from moneyos.sync_orchestrator import record_transaction, sync_transactions
from moneyos.users import complete_onboarding, get_settings, update_settings

logger = logging.getLogger("moneyos")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CredentialsPayload(BaseModel):
    username: str | None = None
    password: str | None = None


class RecurringExpense(CamelModel):
    id: str | None = None
    name: str = ""
    amount: float = 0
    date: int | None = None
    frequency: str = "Monthly"


class UserSettings(CamelModel):
    monthly_income: float = 0
    current_balance: float = 0
    currency: str
    recurring_expenses: list[RecurringExpense] = []
    onboarding_complete: bool = False

    @classmethod
    def from_row(cls, row: dict) -> "UserSettings":
        return cls(
            monthly_income=row["monthly_income"],
            current_balance=row["current_balance"],
            currency=row["currency"],
            recurring_expenses=row["recurring_expenses"] or [],
            onboarding_complete=bool(row["onboarding_complete"]),
        )


class SettingsPayload(CamelModel):
    monthly_income: Decimal | None = None
    recurring_expenses: list[RecurringExpense] | None = None


class BudgetPayload(CamelModel):
    id: int | None = Field(default=None, validation_alias=AliasChoices("id", "_id"))
    category: str | None = None
    limit: Decimal | None = None

    def to_spec(self) -> BudgetSpec:
        return BudgetSpec.from_payload(self.category, self.limit, self.id)


class OnboardingPayload(CamelModel):
    monthly_income: Decimal | None = None
    current_balance: Decimal | None = None
    recurring_expenses: list[RecurringExpense] | None = None
    initial_budgets: list[BudgetPayload] | None = None


class BudgetsPayload(BaseModel):
    budgets: list[BudgetPayload] = []


class RecalculatePayload(BaseModel):
    category: str | None = None


class TransactionPayload(BaseModel):
    transaction: dict[str, Any]


class SyncPayload(BaseModel):
    transactions: list[Any] | None = None


class GoalPayload(CamelModel):
    id: str | None = None
    name: str = ""
    target_amount: Decimal = Decimal("0")
    saved_amount: Decimal = Decimal("0")
    deadline: str | None = None
    status: str | None = None


class GoalEnvelope(BaseModel):
    goal: GoalPayload


class MessagePushPayload(CamelModel):
    sender: str | None = Field(default=None, validation_alias=AliasChoices("from", "sender"))
    body: str | None = None
    device_id: str | None = None
    received_at: datetime | None = None


class TransactionResponse(CamelModel):
    id: str
    hash: str | None = None
    type: str
    amount: float
    category: str | None = None
    description: str | None = None
    date: str | None = None
    firewall_decision: str | None = None
    firewall_reason: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "TransactionResponse":
        return cls(
            id=row["client_id"] or str(row["id"]),
            hash=row["hash"],
            type=row["type"],
            amount=row["amount"],
            category=row["category"],
            description=row["description"],
            date=row["date"],
            firewall_decision=row["firewall_decision"],
            firewall_reason=row["firewall_reason"],
        )


class BudgetResponse(CamelModel):
    id: int
    category: str
    limit: float
    spent: float

    @classmethod
    def from_row(cls, row: dict) -> "BudgetResponse":
        return cls(id=row["id"], category=row["category"], limit=row["limit_amount"], spent=row["spent"])


class GoalResponse(CamelModel):
    id: str
    name: str
    target_amount: float
    saved_amount: float
    deadline: str | None = None
    status: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "GoalResponse":
        return cls(
            id=row["client_id"] or str(row["id"]),
            name=row["name"],
            target_amount=row["target_amount"],
            saved_amount=row["saved_amount"],
            deadline=row["deadline"],
            status=row["status"],
        )


class PendingMessageResponse(CamelModel):
    id: int
    device_id: str | None = None
    sender: str | None = Field(
        default=None,
        validation_alias=AliasChoices("from", "sender"),
        serialization_alias="from",
    )
    body: str
    received_at: datetime


class RegisterResponse(BaseModel):
    success: bool = True
    message: str


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    username: str


class SettingsResponse(BaseModel):
    success: bool = True
    settings: UserSettings


class DataResponse(BaseModel):
    success: bool = True
    settings: UserSettings
    transactions: list[TransactionResponse]
    budgets: list[BudgetResponse]
    goals: list[GoalResponse]


class TransactionSaveResponse(BaseModel):
    success: bool = True
    duplicate: bool = False
    transaction: TransactionResponse | None = None


class SyncFailure(BaseModel):
    index: int
    hash: str | None = None
    error: str


class SyncResponse(BaseModel):
    success: bool = True
    added: int
    duplicates: int = 0
    failed: list[SyncFailure] = []
    unaggregated: list[str | None] = []


class BudgetsResponse(BaseModel):
    success: bool = True
    budgets: list[BudgetResponse]


class GoalSaveResponse(BaseModel):
    success: bool = True
    goal: GoalResponse


class PushResponse(BaseModel):
    success: bool = True
    id: int


class PullResponse(BaseModel):
    success: bool = True
    count: int
    messages: list[PendingMessageResponse]


class SuccessResponse(BaseModel):
    success: bool = True


def get_store(request: Request) -> LedgerStore:
    return request.app.state.store


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def current_user_id(
    request: Request,
    authorization: str | None = Header(None),
) -> int:
    token = extract_bearer(authorization)
    return decode_token(request.app.state.settings, token)


def list_transactions(store: LedgerStore, user_id: int) -> list[dict]:
    with store.begin() as conn:
        rows = conn.execute(
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    return [dict(row) for row in rows]


def _dump_recurring(expenses: list[RecurringExpense] | None) -> list[dict] | None:
    if expenses is None:
        return None
    return [expense.model_dump(by_alias=True) for expense in expenses]


def create_app(settings: Settings | None = None, store: LedgerStore | None = None) -> FastAPI:
    """Build the HTTP application.

    The caller owns ``store``; when omitted one is opened from
    ``settings.database_url`` and disposed on shutdown.
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    owns_store = store is None
    if store is None:
        store = LedgerStore.from_url(settings.database_url)
    store.create_all()

    app = FastAPI(title="MoneyOS")
    app.state.settings = settings
    app.state.store = store
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if owns_store:
        @app.on_event("shutdown")
        def close_store() -> None:
            store.dispose()

    @app.exception_handler(MoneyOSError)
    async def handle_moneyos_error(request: Request, exc: MoneyOSError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = "Invalid request body."
        if errors:
            location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
            message = f"{location}: {errors[0].get('msg')}" if location else str(errors[0].get("msg"))
        return JSONResponse(status_code=400, content={"success": False, "error": message})

    @app.exception_handler(SQLAlchemyError)
    async def handle_storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.exception("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
        return await handle_moneyos_error(request, StorageError("Storage unavailable."))

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.post("/auth/register", response_model=RegisterResponse)
    def register(
        payload: CredentialsPayload,
        store: LedgerStore = Depends(get_store),
        app_settings: Settings = Depends(get_app_settings),
    ) -> RegisterResponse:
        register_user(store, payload.username, payload.password, app_settings.default_currency)
        return RegisterResponse(message="User created successfully")

    @app.post("/auth/login", response_model=LoginResponse)
    def login(
        payload: CredentialsPayload,
        store: LedgerStore = Depends(get_store),
        app_settings: Settings = Depends(get_app_settings),
    ) -> LoginResponse:
        user = authenticate(store, payload.username, payload.password)
        token = issue_token(app_settings, user["id"], user["username"])
        return LoginResponse(token=token, username=user["username"])

    @app.get("/user/settings", response_model=SettingsResponse)
    def read_settings(
        user_id: int = Depends(current_user_id),
        store: LedgerStore = Depends(get_store),
    ) -> SettingsResponse:
        return SettingsResponse(settings=UserSettings.from_row(get_settings(store, user_id)))

    @app.post("/user/settings", response_model=SettingsResponse)
    def write_settings(
        payload: SettingsPayload,
        user_id: int = Depends(current_user_id),
        store: LedgerStore = Depends(get_store),
    ) -> SettingsResponse:
        row = update_settings(
            store,
            user_id,
            monthly_income=payload.monthly_income,
            recurring_expenses=_dump_recurring(payload.recurring_expenses),
        )
        return SettingsResponse(settings=UserSettings.from_row(row))

    @app.post("/onboarding", response_model=SettingsResponse)
    def onboarding(
        payload: OnboardingPayload,
        user_id: int = Depends(current_user_id),
        store: LedgerStore = Depends(get_store),
    ) -> SettingsResponse:
        specs = [budget.to_spec() for budget in payload.initial_budgets or []]
        row = complete_onboarding(
            store,
            user_id,
            monthly_income=payload.monthly_income,
            current_balance=payload.current_balance,
            recurring_expenses=_dump_recurring(payload.recurring_expenses),
            initial_budgets=specs,
        )
        return SettingsResponse(settings=UserSettings.from_row(row))

    @app.get("/data", response_model=DataResponse)
    def hydrate(
        user_id: int = Depends(current_user_id),
        store: LedgerStore = Depends(get_store),
    ) -> DataResponse:
        return DataResponse(
            settings=UserSettings.from_row(get_settings(store, user_id)),
            transactions=[TransactionResponse.from_row(row) for row in list_transactions(store, user_id)],
            budgets=[BudgetResponse.from_row(row) for row in list_budgets(store, user_id)],
            goals=[GoalResponse.from_row(row) for row in list_goals(store, user_id)],
        )

    @app.post("/transactions", response_model=TransactionSaveResponse)
    def save_transaction(
        payload: TransactionPayload,
        user_id: int = Depends(current_user_id),
        store: LedgerStore = Depends(get_store),
    ) -> TransactionSaveResponse:
        recorded = record_transaction(store, user_id, payload.transaction)
        if not recorded.admission.admitted:
            return TransactionSaveResponse(duplicate=True)
        return TransactionSaveResponse(transaction=TransactionResponse.from_row(recorded.admission.row))

    @app.post("/transactions/sync", response_model=SyncResponse)
    def sync(
        payload: SyncPayload,
        user_id: int = Depends(current_user_id),
        store: LedgerStore = Depends(get_store),
    ) -> SyncResponse:
        result = sync_transactions(store, user_id, payload.transactions or [])
        return SyncResponse(
            added=result.added,
            duplicates=result.duplicates,
            failed=[SyncFailure(**failure.to_dict()) for failure in result.failed],
            unaggregated=result.unaggregated,
        )

    @app.post("/budgets", response_model=BudgetsResponse)
    def save_budgets(
        payload: BudgetsPayload,
        user_id: int = Depends(current_user_id),
        store: LedgerStore = Depends(get_store),
    ) -> BudgetsResponse:
        specs = [budget.to_spec() for budget in payload.budgets]
        saved = [
            upsert_budget(store, user_id, spec.category, spec.limit, budget_id=spec.budget_id)
            for spec in specs
        ]
        return BudgetsResponse(budgets=[BudgetResponse.from_row(row) for row in saved])

    @app.post("/budgets/recalculate", response_model=BudgetsResponse)
    def recalculate_budgets(
        payload: RecalculatePayload | None = None,
        user_id: int = Depends(current_user_id),
        store: LedgerStore = Depends(get_store),
    ) -> BudgetsResponse:
        category = payload.category.strip() if payload and payload.category else None
        refreshed = recalculate(store, user_id, category)
        return BudgetsResponse(budgets=[BudgetResponse.from_row(row) for row in refreshed])

    @app.delete("/budgets/{budget_id}", response_model=SuccessResponse)
    def remove_budget(
        budget_id: int,
        user_id: int = Depends(current_user_id),
        store: LedgerStore = Depends(get_store),
    ) -> SuccessResponse:
        delete_budget(store, user_id, budget_id)
        return SuccessResponse()

    @app.post("/goals", response_model=GoalSaveResponse)
    def save_goal(
        payload: GoalEnvelope,
        user_id: int = Depends(current_user_id),
        store: LedgerStore = Depends(get_store),
    ) -> GoalSaveResponse:
        goal = payload.goal
        row = create_goal(
            store,
            user_id,
            name=goal.name,
            target_amount=goal.target_amount,
            saved_amount=goal.saved_amount,
            deadline=goal.deadline,
            status=goal.status,
            client_id=goal.id,
        )
        return GoalSaveResponse(goal=GoalResponse.from_row(row))

    @app.post("/push-sms", response_model=PushResponse)
    def push_sms(
        payload: MessagePushPayload,
        x_sms_secret: str | None = Header(None, alias="x-sms-secret"),
        store: LedgerStore = Depends(get_store),
        app_settings: Settings = Depends(get_app_settings),
    ) -> PushResponse:
        verify_push_secret(app_settings, x_sms_secret)
        row = push_message(
            store,
            payload.body,
            sender=payload.sender,
            device_id=payload.device_id,
            received_at=payload.received_at,
        )
        return PushResponse(id=row["id"])

    @app.get("/sync-sms", response_model=PullResponse)
    def sync_sms(
        store: LedgerStore = Depends(get_store),
        app_settings: Settings = Depends(get_app_settings),
    ) -> PullResponse:
        messages = pull_messages(store, app_settings.sms_pull_limit)
        return PullResponse(
            count=len(messages),
            messages=[PendingMessageResponse.model_validate(message) for message in messages],
        )

    return app
