"""Admin endpoints for credentials, alert rules, collection status and operational events."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, cast

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from spendwatch.core.exceptions import (
    AuthenticationRequiredError,
    InvalidAlertRuleError,
    KeyManagementError,
    KeyManagementUnavailableError,
    ProviderRequestError,
    ProviderUnavailableError,
)
from spendwatch.core.timeutils import utcnow
from spendwatch.jobs.daily_collection import JOB_NAME as DAILY_JOB_NAME
from spendwatch.services import Services, get_services
from spendwatch.storage.alerts import create_alert_rule, get_last_fired_at
from spendwatch.storage.costs import count_cost_records
from spendwatch.storage.credentials import (
    deactivate_credential,
    list_team_credentials,
    validate_key_format,
)
from spendwatch.storage.cron import get_cron_execution
from spendwatch.storage.teams import get_team
from spendwatch.telemetry.events import list_recent_events, record_event

router = APIRouter(prefix="/admin")


class CredentialIn(BaseModel):
    provider: str = "openai"
    organization_id: str = Field(min_length=1)
    api_key: str = Field(min_length=1)


class AlertRuleIn(BaseModel):
    window_kind: str
    limit_value: Decimal


@router.post("/teams/{team_id}/credentials")
async def register_credential(
    team_id: int,
    body: CredentialIn,
    services: Annotated[Services, Depends(get_services)],
) -> dict:
    if get_team(team_id) is None:
        raise HTTPException(status_code=404, detail="Team not found")
    if body.provider not in services.registry.providers():
        raise HTTPException(status_code=400, detail="Unsupported provider")
    if not validate_key_format(body.provider, body.api_key):
        raise HTTPException(status_code=400, detail="Invalid API key format")

    adapter = services.registry.get_adapter(body.provider)
    try:
        await adapter.validate_api_key(body.api_key)
    except AuthenticationRequiredError as exc:
        record_event(
            "credential_invalid",
            "WARNING",
            message="Credential validation failed: invalid API key",
            team_id=team_id,
            organization_id=body.organization_id,
            meta={"provider": body.provider},
        )
        raise HTTPException(status_code=400, detail="Invalid API key") from exc
    except ProviderUnavailableError as exc:
        raise HTTPException(
            status_code=503, detail=f"Provider validation failed: {exc.message}"
        ) from exc
    except ProviderRequestError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc

    try:
        credential = await services.vault.register(
            team_id, body.provider, body.organization_id, body.api_key
        )
    except KeyManagementUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Key management unavailable") from exc
    except KeyManagementError as exc:
        raise HTTPException(status_code=500, detail="Key management error") from exc

    record_event(
        "credential_registered",
        "INFO",
        message="Organization credential saved via admin",
        team_id=team_id,
        organization_id=body.organization_id,
        meta={"provider": body.provider},
    )
    return {"status": "ok", "credential_id": credential.id}


@router.get("/teams/{team_id}/credentials")
def list_credentials(team_id: int) -> dict:
    if get_team(team_id) is None:
        raise HTTPException(status_code=404, detail="Team not found")
    data = []
    for item in list_team_credentials(team_id):
        created_at = cast(datetime | None, item.created_at)
        data.append(
            {
                "id": item.id,
                "provider": item.provider,
                "organization_id": item.organization_id,
                "key_last4": item.key_last4,
                "is_active": item.is_active,
                "created_at": created_at.isoformat() if created_at else None,
            }
        )
    return {"credentials": data}


@router.post("/credentials/{credential_id}/disable")
def disable_credential(credential_id: int) -> dict:
    if not deactivate_credential(credential_id):
        raise HTTPException(status_code=404, detail="Credential not found")
    record_event(
        "credential_disabled",
        "INFO",
        message=f"Credential {credential_id} disabled via admin",
    )
    return {"status": "ok"}


@router.post("/projects/{project_id}/alerts")
def create_alert(project_id: int, body: AlertRuleIn) -> dict:
    try:
        rule = create_alert_rule(project_id, body.window_kind, body.limit_value)
    except InvalidAlertRuleError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Project not found") from exc
    return {
        "status": "ok",
        "rule_id": rule.id,
        "window_kind": rule.window_kind,
        "limit_value": str(rule.limit_value),
    }


@router.get("/events")
def list_events(limit: int = 25) -> dict:
    """Return recent operational events."""
    limit_value = max(1, min(limit, 100))
    return {"events": list_recent_events(limit=limit_value)}


@router.get("/alerts/{rule_id}")
def alert_status(rule_id: int) -> dict:
    try:
        last_fired = get_last_fired_at(rule_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="Alert rule not found") from exc
    return {
        "rule_id": rule_id,
        "last_fired_at": last_fired.isoformat() if last_fired else None,
    }


@router.get("/status")
def collection_status(project_id: int | None = None) -> dict:
    """Report whether today's collection ran and how many cost rows are stored."""
    today = utcnow().date().isoformat()
    execution = get_cron_execution(DAILY_JOB_NAME, today)
    executed_at = cast(datetime | None, execution.executed_at) if execution else None
    return {
        "date": today,
        "daily_batch": {
            "executed": execution is not None,
            "executed_at": executed_at.isoformat() if executed_at else None,
        },
        "cost_records": count_cost_records(project_id),
    }
