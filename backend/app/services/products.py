# backend/app/services/products.py
"""
Product catalog lookup used when a referred purchase is registered.

The lookup is best effort: a missing product or a failing query yields
None and registration continues with an empty snapshot.
"""
from typing import Optional, Dict, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.logging import get_logger
from backend.app.models.product import Product

logger = get_logger(__name__)


class ProductCatalog:
    """Reads product code and name for purchase snapshots."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _find_product(self, product_ref: str) -> Optional[Product]:
        result = await self.session.execute(
            select(Product).where(Product.product_code == product_ref)
        )
        product = result.scalar_one_or_none()
        if product is None and product_ref.isdigit():
            product = await self.session.get(Product, int(product_ref))
        return product

    async def find_product_snapshot(self, product_ref: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Resolve a product reference (public code or numeric id).

        Returns:
            {"product_id": code, "product_name": name} or None
        """
        if not product_ref:
            return None
        try:
            product = await self._find_product(str(product_ref))
        except SQLAlchemyError as e:
            logger.warning("Product snapshot lookup failed", product_ref=product_ref, error=str(e))
            return None
        if product is None:
            logger.info("Product not found for snapshot", product_ref=product_ref)
            return None
        return {"product_id": product.product_code, "product_name": product.name}
