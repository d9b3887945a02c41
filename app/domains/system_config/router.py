from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.deps import get_db, require_admin
from app.core.security import Principal
from app.domains.system_config.schemas import SystemConfigOut, SystemConfigUpdateIn
from app.domains.system_config.service import get_value, list_all, set_value


router = APIRouter(prefix="/system-config")


@router.get("", response_model=list[SystemConfigOut])
def config_list(_principal: Principal = Depends(require_admin), db: Session = Depends(get_db)) -> list[SystemConfigOut]:
    return [SystemConfigOut.model_validate(row) for row in list_all(db)]


@router.get("/{key}", response_model=SystemConfigOut)
def config_get(key: str, _principal: Principal = Depends(require_admin), db: Session = Depends(get_db)) -> SystemConfigOut:
    return SystemConfigOut.model_validate(get_value(db, key))


@router.patch("/{key}", response_model=SystemConfigOut)
def config_update(
    key: str,
    payload: SystemConfigUpdateIn,
    _principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> SystemConfigOut:
    return SystemConfigOut.model_validate(set_value(db, key=key, value=payload.value.strip()))
