"""
Fulfillment Engine — Product catalogue operations

Products become effectively immutable once stock or orders reference them;
deletion is refused while any such reference exists.
"""
import logging
import re
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DuplicateConstraint, NotFound, ValidationError
from app.db import stock_ops
from app.db.audit import record_audit
from app.models.inventory import Product
from app.models.order import OrderItem

logger = logging.getLogger(__name__)

SKU_PATTERN = re.compile(r"^[A-Za-z0-9]+$")


async def get_product(db: AsyncSession, product_id: str) -> Product:
    product = await db.get(Product, product_id)
    if product is None:
        raise NotFound("product", product_id)
    return product


async def create_product(
    db: AsyncSession,
    merchant_id: str,
    sku: str,
    name: str,
    *,
    category: str | None = None,
    unit_price: Decimal | None = None,
    actor_id: str | None = None,
) -> Product:
    if not sku or not SKU_PATTERN.match(sku):
        raise ValidationError(f"SKU '{sku}' must be alphanumeric")
    existing = await db.execute(select(Product.id).where(Product.sku == sku))
    if existing.scalar_one_or_none() is not None:
        raise DuplicateConstraint(f"SKU '{sku}' already exists")

    product = Product(merchant_id=merchant_id, sku=sku, name=name, category=category, unit_price=unit_price)
    db.add(product)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise DuplicateConstraint(f"SKU '{sku}' already exists")

    record_audit(db, actor_id, "CREATE_PRODUCT", "products", product.id,
                 new_values={"merchant_id": merchant_id, "sku": sku, "name": name})
    await db.commit()
    return product


async def count_order_references(db: AsyncSession, product_id: str) -> int:
    result = await db.execute(select(func.count(OrderItem.id)).where(OrderItem.product_id == product_id))
    return int(result.scalar_one())


async def update_product(db: AsyncSession, product_id: str, changes: dict, actor_id: str | None = None) -> Product:
    """Administrative edit of mutable fields; joins the caller's transaction."""
    product = await get_product(db, product_id)
    old_values = {field: getattr(product, field) for field in changes}
    for field, value in changes.items():
        setattr(product, field, value)
    record_audit(db, actor_id, "UPDATE_PRODUCT", "products", product_id,
                 old_values=old_values, new_values=changes)
    return product


async def delete_product(db: AsyncSession, product_id: str, actor_id: str | None = None) -> None:
    """Remove a product that no stock row and no order item references; joins the caller's transaction."""
    product = await get_product(db, product_id)
    stock_rows = await stock_ops.count_stock_items(db, product_id)
    order_refs = await count_order_references(db, product_id)
    if stock_rows or order_refs:
        raise ValidationError(
            f"Product '{product_id}' cannot be deleted: {stock_rows} stock item(s), "
            f"{order_refs} order item(s) reference it"
        )
    await db.delete(product)
    record_audit(db, actor_id, "DELETE_PRODUCT", "products", product_id,
                 old_values={"sku": product.sku, "name": product.name})
    logger.info("Deleted product %s (%s)", product_id, product.sku)
