"""Audit trail for subscription transitions, plan edits and payment anomalies.

Entries go to `audit_logs`. Writing an entry never raises: a failed audit
write is logged and the calling transition still completes.
"""
from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

# Payer contact details are never stored in the audit trail
REDACTED_KEYS = frozenset({"phone", "phone_number", "email", "payer_email"})


def calculate_diff(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Field-level diff between two state snapshots.

    Keys present only in `after` are "added", only in `before` are
    "removed", and keys whose value differs are "changed" as {from, to}.
    Empty categories are dropped.
    """
    before = before or {}
    after = after or {}
    added = {k: after[k] for k in after.keys() - before.keys()}
    removed = {k: before[k] for k in before.keys() - after.keys()}
    changed = {
        k: {"from": before[k], "to": after[k]}
        for k in before.keys() & after.keys()
        if before[k] != after[k]
    }
    diff = {"added": added, "removed": removed, "changed": changed}
    return {k: v for k, v in diff.items() if v}


def _redact(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not values:
        return values
    return {
        k: ("***" if k in REDACTED_KEYS and v else _redact(v) if isinstance(v, dict) else v)
        for k, v in values.items()
    }


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[str] = None,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
    auto_diff: bool = True
) -> str:
    """Record one audit entry.

    Args:
        action: What happened (AuditAction)
        actor_role: "user", "admin" or "SYSTEM" for webhook/lazy transitions
        actor_id: Who triggered it, when a person did
        user_id: Whose subscription or usage is affected
        resource_type: 'subscription', 'plan' or 'payment'
        resource_id: Subscription owner, plan name or payment reference
        before_state / after_state: Snapshots around the transition
        metadata: Extra context (provider, reference, amounts)
        reason_code: Short machine-readable cause
        auto_diff: Store a field-level diff when both snapshots are given

    Returns:
        audit_id, or "" when the write failed
    """
    try:
        extra = dict(_redact(metadata) or {})
        if auto_diff and before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                extra["diff"] = diff

        entry = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=_redact(before_state),
            after_state=_redact(after_state),
            metadata=extra or None,
            reason_code=reason_code,
        )
        await database.get_db().audit_logs.insert_one(entry.model_dump(mode="json"))
        logger.info(f"Audit log created: {action.value} user_id={user_id} resource={resource_type}:{resource_id}")
        return entry.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log {action}: {e}")
        return ""
