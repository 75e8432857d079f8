#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Catalog lookups backing item validation and the product feed."""

import decimal
import time
from typing import Dict, Iterable, List, Optional

from agentic_checkout import db
from agentic_checkout.enums import CouponType
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession


class CatalogProduct(BaseModel):
  """What the checkout engine needs to know about a product."""

  sku: str
  product_ref: str
  name: str
  description: Optional[str] = None
  image_url: Optional[str] = None
  price: decimal.Decimal
  purchasable: bool = True
  manage_stock: bool = True
  in_stock: bool = True
  # None when stock is not managed.
  stock_quantity: Optional[int] = None
  tax_class: str = ""


class CouponInfo(BaseModel):
  code: str
  type: CouponType
  # Percentage for percent coupons, currency amount for fixed ones.
  amount: decimal.Decimal


def _to_catalog_product(
    product: db.Product, quantity: Optional[int]
) -> CatalogProduct:
  if product.manage_stock:
    stock_quantity = quantity or 0
    in_stock = stock_quantity > 0
  else:
    stock_quantity = None
    in_stock = product.stock_status != "outofstock"
  return CatalogProduct(
      sku=product.sku,
      product_ref=product.id,
      name=product.title,
      description=product.description,
      image_url=product.image_url,
      price=decimal.Decimal(product.price) / 100,
      purchasable=bool(product.purchasable),
      manage_stock=bool(product.manage_stock),
      in_stock=in_stock,
      stock_quantity=stock_quantity,
      tax_class=product.tax_class or "",
  )


class CatalogService:
  """Resolves SKUs against the catalog tables."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def get_products_by_skus(
      self, skus: Iterable[str]
  ) -> Dict[str, CatalogProduct]:
    """Looks up products and their stock in one batched query each.

    Args:
      skus: The SKUs to resolve.

    Returns:
      A dict keyed by SKU. Unknown SKUs are absent.
    """
    products = await db.get_products_by_skus(self.session, set(skus))
    levels = await db.get_inventory_levels(
        self.session, [p.id for p in products]
    )
    return {
        p.sku: _to_catalog_product(p, levels.get(p.id)) for p in products
    }

  async def list_products(self) -> List[CatalogProduct]:
    products = await db.get_all_products(self.session)
    levels = await db.get_inventory_levels(
        self.session, [p.id for p in products]
    )
    return [_to_catalog_product(p, levels.get(p.id)) for p in products]

  async def get_coupon(self, code: str) -> Optional[CouponInfo]:
    """Returns the coupon if it exists and has not expired."""
    coupon = await db.get_coupon(self.session, code.strip().lower())
    if coupon is None:
      return None
    if coupon.expires_at is not None and coupon.expires_at <= time.time():
      return None
    if coupon.type == CouponType.PERCENT.value:
      amount = decimal.Decimal(coupon.value)
    else:
      amount = decimal.Decimal(coupon.value) / 100
    return CouponInfo(code=coupon.code, type=coupon.type, amount=amount)
