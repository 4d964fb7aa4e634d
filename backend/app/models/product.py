from sqlalchemy import String, Integer, DECIMAL, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from decimal import Decimal
from typing import Optional
from backend.app.core.base import Base


class Product(Base):
    """Catalog product, read only here: purchases copy its code and name once."""
    __tablename__ = 'products'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Public product code (e.g. "PROD-001"), what purchases reference
    product_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(12, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
