from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.domains.system_config.models import SystemConfig


def list_all(db: Session) -> list[SystemConfig]:
    return db.query(SystemConfig).order_by(SystemConfig.key.asc()).all()


def get_value(db: Session, key: str) -> SystemConfig:
    row = db.get(SystemConfig, key)
    if row is None:
        raise NotFoundError(f"Unknown config key: {key}")
    return row


def set_value(db: Session, *, key: str, value: str) -> SystemConfig:
    row = db.get(SystemConfig, key)
    if row is None:
        row = SystemConfig(key=key, value=value)
        db.add(row)
    else:
        row.value = value
    row.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(row)
    return row
