from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from models.tax_config import TaxConfig
from services.pricing import to_decimal

logger = structlog.get_logger()


def _matches(config: TaxConfig, region: str) -> bool:
    regions = config.applicable_regions or []
    return region.strip().lower() in {r.strip().lower() for r in regions}


def resolve_tax_rate(db: Session, region: str | None = None) -> Decimal:
    """Rate for ``region``: the matching active config, else the active
    default, else ``settings.DEFAULT_TAX_RATE``. Never raises."""
    try:
        configs = db.execute(
            select(TaxConfig).where(TaxConfig.is_active.is_(True)).order_by(TaxConfig.id)
        ).scalars().all()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("tax_config_lookup_failed", region=region)
        return settings.DEFAULT_TAX_RATE

    if region:
        for config in configs:
            if _matches(config, region):
                return to_decimal(config.rate)

    for config in configs:
        if config.is_default:
            return to_decimal(config.rate)

    logger.warning("tax_rate_fallback", region=region, rate=str(settings.DEFAULT_TAX_RATE))
    return settings.DEFAULT_TAX_RATE
