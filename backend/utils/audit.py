from database import database
from models import AuditLog, AuditAction, UserRole
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Return the fields that changed between two subscription snapshots.

    Keys of the result are ``added``, ``removed`` and ``changed``; empty
    categories are left out.
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after}

    if not after:
        return {"removed": before}

    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        if key not in before:
            diff["added"][key] = after[key]
        elif key not in after:
            diff["removed"][key] = before[key]
        elif before[key] != after[key]:
            diff["changed"][key] = {"from": before[key], "to": after[key]}

    return {k: v for k, v in diff.items() if v}

async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> str:
    """Write an audit entry for a subscription event.

    Audit failures are logged and swallowed so that a billing mutation which
    already happened is never reported as failed. Returns the audit id, or an
    empty string when the entry could not be written.
    """
    try:
        db = database.get_db()

        enriched_metadata = dict(metadata) if metadata else {}
        if before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
            reason_code=reason_code,
            ip_address=ip_address,
        )

        doc = audit_log.model_dump(mode="json")
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        return ""
