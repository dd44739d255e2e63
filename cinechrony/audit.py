from sqlalchemy.ext.asyncio import AsyncSession

from .models import AuditLog, User


def _normalize_message(value: str) -> str:
    normalized = " ".join(str(value or "").split())
    return normalized[:1000]


def add_audit_log(
    db: AsyncSession,
    *,
    action: str,
    message: str,
    actor_user: User | None = None,
) -> None:
    db.add(
        AuditLog(
            action=action,
            message=_normalize_message(message),
            actor_user_id=actor_user.id if actor_user else None,
            actor_username=actor_user.username if actor_user else None,
        )
    )
