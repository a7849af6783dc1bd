from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from core.db import commit, get_db
from core.errors import NotFoundError
from models.tax_config import TaxConfig
from models.user import User
from schemas.tax import TaxConfigCreate, TaxConfigOut, TaxConfigUpdate
from security.dependencies import require_admin

router = APIRouter(prefix="/tax", tags=["tax"])


def _get_config(db: Session, config_id: int) -> TaxConfig:
    config = db.get(TaxConfig, config_id)
    if not config:
        raise NotFoundError("Tax configuration not found")
    return config


def _clear_other_defaults(db: Session, keep_id: int | None = None) -> None:
    # Only one default config at a time
    stmt = update(TaxConfig).where(TaxConfig.is_default.is_(True))
    if keep_id is not None:
        stmt = stmt.where(TaxConfig.id != keep_id)
    db.execute(stmt.values(is_default=False).execution_options(synchronize_session="fetch"))


@router.get("/", response_model=List[TaxConfigOut])
def list_tax_configs(db: Session = Depends(get_db)):
    stmt = select(TaxConfig).where(TaxConfig.is_active.is_(True)).order_by(TaxConfig.id)
    return db.execute(stmt).scalars().all()


@router.post("/", response_model=TaxConfigOut, status_code=201)
def create_tax_config(data: TaxConfigCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    if data.is_default:
        _clear_other_defaults(db)
    config = TaxConfig(**data.model_dump())
    db.add(config)
    commit(db)
    db.refresh(config)
    return config


@router.put("/{config_id}", response_model=TaxConfigOut)
def update_tax_config(
    config_id: int,
    data: TaxConfigUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    config = _get_config(db, config_id)
    changes = data.model_dump(exclude_unset=True)
    if changes.get("is_default"):
        _clear_other_defaults(db, keep_id=config.id)
    for field, value in changes.items():
        setattr(config, field, value)
    commit(db)
    db.refresh(config)
    return config


@router.delete("/{config_id}", status_code=204)
def delete_tax_config(config_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    db.delete(_get_config(db, config_id))
    commit(db)
