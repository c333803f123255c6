"""Rule, channel, auto-resolve rule and whole-config management API.

``PUT`` on an item path upserts; the id in the path wins over any id in the
body. Every change is validated against the full configuration and rejected
with 422 (listing all violations) if it would leave it inconsistent.
"""

from __future__ import annotations

from typing import Any

import pydantic
from fastapi import APIRouter, Body, Response

from secwatch.api.schemas import http_error
from secwatch.errors import SecwatchError, ValidationError
from secwatch.models import AlertRule, AutoResolveRule, NotificationChannel
from secwatch.monitor import SecurityMonitor

router = APIRouter(prefix="/api", tags=["configuration"])

_monitor: SecurityMonitor | None = None


def init_router(monitor: SecurityMonitor) -> None:
    global _monitor  # noqa: PLW0603
    _monitor = monitor


def _svc() -> SecurityMonitor:
    assert _monitor is not None, "SecurityMonitor not initialized"
    return _monitor


def _parse(model: type[pydantic.BaseModel], body: dict[str, Any], item_id: str) -> Any:
    try:
        return model.model_validate({**body, "id": item_id})
    except pydantic.ValidationError as e:
        raise http_error(ValidationError.from_pydantic(e)) from e


# ------------------------------------------------------------------
# Alert rules
# ------------------------------------------------------------------


@router.get("/rules", response_model=list[AlertRule])
def list_rules() -> list[AlertRule]:
    return _svc().list_rules()


@router.get("/rules/{rule_id}", response_model=AlertRule)
def get_rule(rule_id: str) -> AlertRule:
    try:
        return _svc().get_rule(rule_id)
    except SecwatchError as e:
        raise http_error(e) from e


@router.put("/rules/{rule_id}", response_model=AlertRule)
def put_rule(rule_id: str, body: dict[str, Any] = Body(...)) -> AlertRule:
    rule = _parse(AlertRule, body, rule_id)
    try:
        return _svc().put_rule(rule)
    except SecwatchError as e:
        raise http_error(e) from e


@router.delete("/rules/{rule_id}", status_code=204)
def delete_rule(rule_id: str) -> Response:
    try:
        _svc().delete_rule(rule_id)
    except SecwatchError as e:
        raise http_error(e) from e
    return Response(status_code=204)


# ------------------------------------------------------------------
# Notification channels
# ------------------------------------------------------------------


@router.get("/channels", response_model=list[NotificationChannel])
def list_channels() -> list[NotificationChannel]:
    return _svc().list_channels()


@router.get("/channels/{channel_id}", response_model=NotificationChannel)
def get_channel(channel_id: str) -> NotificationChannel:
    try:
        return _svc().get_channel(channel_id)
    except SecwatchError as e:
        raise http_error(e) from e


@router.put("/channels/{channel_id}", response_model=NotificationChannel)
def put_channel(channel_id: str, body: dict[str, Any] = Body(...)) -> NotificationChannel:
    channel = _parse(NotificationChannel, body, channel_id)
    try:
        return _svc().put_channel(channel)
    except SecwatchError as e:
        raise http_error(e) from e


@router.delete("/channels/{channel_id}", status_code=204)
def delete_channel(channel_id: str) -> Response:
    try:
        _svc().delete_channel(channel_id)
    except SecwatchError as e:
        raise http_error(e) from e
    return Response(status_code=204)


# ------------------------------------------------------------------
# Auto-resolve rules
# ------------------------------------------------------------------


@router.get("/auto-resolve-rules", response_model=list[AutoResolveRule])
def list_auto_resolve_rules() -> list[AutoResolveRule]:
    return _svc().list_auto_resolve_rules()


@router.get("/auto-resolve-rules/{rule_id}", response_model=AutoResolveRule)
def get_auto_resolve_rule(rule_id: str) -> AutoResolveRule:
    try:
        return _svc().get_auto_resolve_rule(rule_id)
    except SecwatchError as e:
        raise http_error(e) from e


@router.put("/auto-resolve-rules/{rule_id}", response_model=AutoResolveRule)
def put_auto_resolve_rule(rule_id: str, body: dict[str, Any] = Body(...)) -> AutoResolveRule:
    rule = _parse(AutoResolveRule, body, rule_id)
    try:
        return _svc().put_auto_resolve_rule(rule)
    except SecwatchError as e:
        raise http_error(e) from e


@router.delete("/auto-resolve-rules/{rule_id}", status_code=204)
def delete_auto_resolve_rule(rule_id: str) -> Response:
    try:
        _svc().delete_auto_resolve_rule(rule_id)
    except SecwatchError as e:
        raise http_error(e) from e
    return Response(status_code=204)


# ------------------------------------------------------------------
# Whole configuration
# ------------------------------------------------------------------


@router.get("/config")
def get_config() -> dict[str, Any]:
    return _svc().get_config().to_dict()


@router.put("/config")
def replace_config(body: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Replace rules, channels, auto-resolve rules and engine settings at once."""
    try:
        return _svc().replace_config(body).to_dict()
    except SecwatchError as e:
        raise http_error(e) from e
