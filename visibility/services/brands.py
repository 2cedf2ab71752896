"""
Brand directory — read access to brands owned by the surrounding product.
"""
import logging
from typing import Any, Dict, List

from visibility.config import DEFAULT_MONTHLY_BUDGET
from visibility.database import get_session
from visibility.errors import BrandNotFound
from visibility.models.brand import Brand

logger = logging.getLogger('services.brands')


def get_brand(brand_id: str) -> Dict[str, Any]:
    """Return {id, name, domain, competitors, monthly_budget, description}."""
    session = get_session()
    try:
        brand = session.get(Brand, brand_id)
        if brand is None:
            raise BrandNotFound(f"Brand not found: {brand_id}")
        return {
            'id': brand.id,
            'name': brand.name or brand.domain,
            'domain': brand.domain,
            'description': brand.description or '',
            'competitors': list(brand.competitors or []),
            'monthly_budget': (
                brand.monthly_budget if brand.monthly_budget is not None else DEFAULT_MONTHLY_BUDGET
            ),
        }
    finally:
        session.close()


def upsert_brand(brand_id: str, name: str, domain: str, competitors: List[str] = None,
                 monthly_budget: float = None, description: str = None) -> None:
    """Create or update a brand row (seeding and tests)."""
    session = get_session()
    try:
        brand = session.get(Brand, brand_id)
        if brand is None:
            brand = Brand(id=brand_id)
            session.add(brand)
        brand.name = name
        brand.domain = domain
        brand.competitors = list(competitors or [])
        brand.monthly_budget = monthly_budget
        brand.description = description
        session.commit()
        logger.info("Upserted brand %s (%s)", brand_id, domain)
    except Exception:
        session.rollback()
        logger.error("Failed to upsert brand %s", brand_id, exc_info=True)
        raise
    finally:
        session.close()
