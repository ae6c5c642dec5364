from datetime import date

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import create_engine

from timeengine.alerts import evaluate_alerts_for_user
from timeengine.config import get_database_url, get_frontend_origin, get_fx_anchor_currency
from timeengine.data_provider import SqlDataProvider, SqlNotificationSink
from timeengine.logging_setup import configure_logging, get_logger
from timeengine.months import month_range, to_month_key
from timeengine.pipeline import compute_for_user, serialize_result
from timeengine.scenarios import ScenarioComparison, evaluate_for_user, parse_scenario_params

configure_logging()
logger = get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_frontend_origin()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = get_database_url()
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
sql_provider = SqlDataProvider(engine)


class WindowPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_month: str = Field(alias="from")
    to_month: str = Field(alias="to")


class ScenarioPreviewPayload(WindowPayload):
    params_json: dict | str | None = None


class AlertEvaluationResponse(BaseModel):
    notifications: int


@app.on_event("startup")
def init_db() -> None:
    sql_provider.init_schema()


def get_provider() -> SqlDataProvider:
    return sql_provider


def get_notification_sink(provider: SqlDataProvider = Depends(get_provider)) -> SqlNotificationSink:
    return SqlNotificationSink(provider.engine)


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def load_profile(provider, x_user_id: str | None):
    user_id = get_user_id(x_user_id)
    profile = provider.get_user(user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="User not found.")
    return profile


def resolve_months(from_month: str, to_month: str) -> list[str]:
    try:
        return month_range(to_month_key(from_month), to_month_key(to_month))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def comparison_response(comparison: ScenarioComparison) -> dict:
    return {
        "months": comparison.months,
        "baseline": serialize_result(comparison.baseline),
        "scenario": serialize_result(comparison.scenario),
        "diff": serialize_result(comparison.diff),
    }


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/time-engine")
def get_time_engine(
    from_month: str = Query(..., alias="from"),
    to_month: str = Query(..., alias="to"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    provider=Depends(get_provider),
) -> dict:
    profile = load_profile(provider, x_user_id)
    months = resolve_months(from_month, to_month)
    try:
        result = compute_for_user(
            provider, profile, months, date.today(), get_fx_anchor_currency()
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"months": months, **serialize_result(result)}


@app.post("/scenarios/preview")
def preview_scenario(
    payload: ScenarioPreviewPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    provider=Depends(get_provider),
) -> dict:
    profile = load_profile(provider, x_user_id)
    months = resolve_months(payload.from_month, payload.to_month)
    params = parse_scenario_params(payload.params_json)
    try:
        comparison = evaluate_for_user(
            provider, profile, params, months, date.today(), get_fx_anchor_currency()
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return comparison_response(comparison)


@app.post("/scenarios/{scenario_id}/evaluate")
def evaluate_stored_scenario(
    scenario_id: int,
    payload: WindowPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    provider=Depends(get_provider),
) -> dict:
    profile = load_profile(provider, x_user_id)
    stored = provider.get_scenario(profile.id, scenario_id)
    if stored is None:
        raise HTTPException(status_code=404, detail="Scenario not found.")
    months = resolve_months(payload.from_month, payload.to_month)
    params = parse_scenario_params(stored.params_json)
    try:
        comparison = evaluate_for_user(
            provider, profile, params, months, date.today(), get_fx_anchor_currency()
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return comparison_response(comparison)


@app.post("/alerts/evaluate", response_model=AlertEvaluationResponse)
def evaluate_alerts(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    provider=Depends(get_provider),
    sink=Depends(get_notification_sink),
) -> AlertEvaluationResponse:
    profile = load_profile(provider, x_user_id)
    delivered = evaluate_alerts_for_user(
        provider, sink, profile.id, anchor=get_fx_anchor_currency()
    )
    logger.info("Alert evaluation for user=%s stored %s notifications", profile.id, delivered)
    return AlertEvaluationResponse(notifications=delivered)
