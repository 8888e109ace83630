"""Audit trail for subscription and entitlement events (audit_logs collection).

Writing an audit entry never fails the operation being audited.
"""
import logging
from typing import Any, Dict, Optional

from database import database
from models import AuditLog, AuditAction

logger = logging.getLogger(__name__)

# Snapshot fields recorded in before/after states (version and dates are noise)
SNAPSHOT_AUDIT_FIELDS = (
    "plan",
    "status",
    "max_assets",
    "features",
    "stripe_customer_id",
    "stripe_subscription_id",
    "stripe_price_id",
    "cancel_at_period_end",
)


def snapshot_audit_state(snapshot: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Reduce a subscription snapshot dict to SNAPSHOT_AUDIT_FIELDS."""
    if not snapshot:
        return None
    return {key: snapshot.get(key) for key in SNAPSHOT_AUDIT_FIELDS}


def field_changes(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """{field: {"from": old, "to": new}} for every field whose value differs."""
    before, after = before or {}, after or {}
    return {
        key: {"from": before.get(key), "to": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[str] = None,
    actor_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    db=None,
) -> str:
    """Record an audit entry and return its audit_id ("" if the write failed).

    When both states are given, metadata gains "changes": the per-field
    from/to values between them.

    actor_role is "system" for webhook-driven entries.
    """
    metadata = dict(metadata or {})
    if before_state and after_state:
        changes = field_changes(before_state, after_state)
        if changes:
            metadata["changes"] = changes

    entry = AuditLog(
        action=action,
        actor_role=actor_role,
        actor_id=actor_id,
        organization_id=organization_id,
        resource_type=resource_type,
        resource_id=resource_id,
        before_state=before_state,
        after_state=after_state,
        metadata=metadata or None,
    )
    try:
        target = db if db is not None else database.get_db()
        await target.audit_logs.insert_one(entry.model_dump())
    except Exception as e:
        logger.error(f"Failed to write audit log {entry.action} for org {organization_id}: {e}")
        return ""

    logger.info(f"Audit: {entry.action} org={organization_id} resource={resource_type}:{resource_id}")
    return entry.audit_id
