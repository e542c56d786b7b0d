import json
import logging
from sqlalchemy.orm import Session
from compliancehub.models import AuditLog, User

logger = logging.getLogger(__name__)


def write_audit(
    db: Session,
    actor: User | None,
    action: str,
    entity: str,
    entity_id: int | str,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_user_id=actor.id if actor else None,
            action=action,
            entity=entity,
            entity_id=str(entity_id),
            metadata_json=json.dumps(metadata or {}, default=str),
        )
    )
    db.commit()
    logger.info("audit", extra={"action": action, "entity": entity, "entity_id": str(entity_id)})
