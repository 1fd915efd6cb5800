"""
Organization-level settings: dispatch tuning, webhook endpoints, and the
webhook and audit trails.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_caller
from ..db import get_db
from ..models.models import Organization, WebhookLog
from ..schemas.dispatch import AuditLogOut, SettingsOut, SettingsUpdate, WebhookIn, WebhookLogOut, WebhookOut
from ..services.access import Caller, guard
from ..services.audit import create_audit_log, get_audit_logs, verify_audit_log
from ..services.errors import NotFoundError, ValidationError
from ..services.repository import OrganizationRepository

router = APIRouter(prefix="/business", tags=["business"])


def resolve_organization(db: Session, caller: Caller, organization_id: Optional[str], permission: str) -> Organization:
    guard.require(caller, permission)
    if caller.is_platform_admin:
        if not organization_id:
            raise ValidationError("organizationId is required", field="organizationId")
        target = organization_id
    else:
        target = caller.organization_id
    organization = OrganizationRepository(db).get(target)
    if organization is None:
        raise NotFoundError("Organization")
    guard.require_access(caller, permission, organization.id)
    return organization


def webhook_out(index: int, hook: dict) -> WebhookOut:
    # Secrets are write-only
    return WebhookOut(
        index=index,
        url=hook.get("url", ""),
        events=hook.get("events") or [],
        enabled=hook.get("enabled", True) is not False,
        has_secret=bool(hook.get("secret")),
    )


def settings_out(organization: Organization) -> SettingsOut:
    return SettingsOut(
        organization_id=organization.id,
        auto_assign_enabled=bool(organization.auto_assign_enabled),
        auto_assign_radius_m=organization.auto_assign_radius_m,
        max_active_missions=organization.max_active_missions,
    )


def _save_webhooks(db: Session, caller: Caller, organization: Organization, hooks: list, action: str, index: int) -> None:
    organization.webhooks = hooks
    create_audit_log(
        db,
        action=action,
        target_type="organization",
        target_id=str(organization.id),
        actor_id=caller.user_id,
        organization_id=str(organization.id),
        metadata={"index": index, "url": hooks[index]["url"] if index < len(hooks) else None},
    )
    db.commit()


@router.get("/webhooks", response_model=List[WebhookOut])
def list_webhooks(
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    organization = resolve_organization(db, caller, organization_id, "webhooks:manage")
    return [webhook_out(i, h) for i, h in enumerate(organization.webhooks or [])]


@router.post("/webhooks", response_model=WebhookOut, status_code=201)
def add_webhook(
    body: WebhookIn,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    organization = resolve_organization(db, caller, organization_id, "webhooks:manage")
    hooks = list(organization.webhooks or [])
    hooks.append(body.model_dump())
    _save_webhooks(db, caller, organization, hooks, "webhook.created", len(hooks) - 1)
    return webhook_out(len(hooks) - 1, hooks[-1])


@router.put("/webhooks/{index}", response_model=WebhookOut)
def update_webhook(
    index: int,
    body: WebhookIn,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    organization = resolve_organization(db, caller, organization_id, "webhooks:manage")
    hooks = list(organization.webhooks or [])
    if index < 0 or index >= len(hooks):
        raise NotFoundError("Webhook")
    updated = body.model_dump()
    if updated.get("secret") is None:
        # Keep the stored secret unless a new one is sent
        updated["secret"] = hooks[index].get("secret")
    hooks[index] = updated
    _save_webhooks(db, caller, organization, hooks, "webhook.updated", index)
    return webhook_out(index, updated)


@router.delete("/webhooks/{index}", status_code=204)
def delete_webhook(
    index: int,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    organization = resolve_organization(db, caller, organization_id, "webhooks:manage")
    hooks = list(organization.webhooks or [])
    if index < 0 or index >= len(hooks):
        raise NotFoundError("Webhook")
    removed = hooks.pop(index)
    organization.webhooks = hooks
    create_audit_log(
        db,
        action="webhook.deleted",
        target_type="organization",
        target_id=str(organization.id),
        actor_id=caller.user_id,
        organization_id=str(organization.id),
        metadata={"index": index, "url": removed.get("url")},
    )
    db.commit()


@router.patch("/settings", response_model=SettingsOut)
def update_settings(
    body: SettingsUpdate,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    organization = resolve_organization(db, caller, organization_id, "settings:manage")
    changes = body.model_dump(exclude_none=True)
    before = {k: getattr(organization, k) for k in changes}
    for key, value in changes.items():
        setattr(organization, key, value)
    if changes:
        create_audit_log(
            db,
            action="organization.settings_updated",
            target_type="organization",
            target_id=str(organization.id),
            actor_id=caller.user_id,
            organization_id=str(organization.id),
            metadata={"before": before, "after": changes},
        )
        db.commit()
    return settings_out(organization)


@router.get("/webhook-logs", response_model=List[WebhookLogOut])
def list_webhook_logs(
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    organization = resolve_organization(db, caller, organization_id, "webhooks:manage")
    query = db.query(WebhookLog).filter(WebhookLog.organization_id == organization.id)
    if status:
        query = query.filter(WebhookLog.status == status)
    rows = query.order_by(WebhookLog.created_at.desc()).limit(limit).offset(offset).all()
    return [WebhookLogOut.model_validate(r) for r in rows]


@router.get("/audit-logs", response_model=List[AuditLogOut])
def list_audit_logs(
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    target_type: Optional[str] = Query(default=None, alias="targetType"),
    target_id: Optional[str] = Query(default=None, alias="targetId"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    organization = resolve_organization(db, caller, organization_id, "audit:view")
    entries = get_audit_logs(db, str(organization.id), target_type, target_id, limit, offset)
    return [
        AuditLogOut(
            id=e.id,
            actor_id=e.actor_id,
            action=e.action,
            target_type=e.target_type,
            target_id=e.target_id,
            metadata=e.metadata_json,
            created_at=e.created_at,
            integrity_ok=verify_audit_log(e),
        )
        for e in entries
    ]
