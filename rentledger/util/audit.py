import json
from sqlalchemy.ext.asyncio import AsyncSession
from rentledger.models.core import AuditLog

def audit(db: AsyncSession, entity: str, entity_id: str, action: str,
          before: dict | None = None, after: dict | None = None, reason: str | None = None):
    entry = AuditLog(
        entity=entity, entity_id=entity_id,
        action=action if not reason else f"{action}:{reason}",
        before=json.dumps(before, default=str) if before else None,
        after=json.dumps(after, default=str) if after else None,
    )
    db.add(entry)
    return entry
