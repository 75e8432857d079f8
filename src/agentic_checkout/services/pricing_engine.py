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

"""Pricing engine computing every monetary field of a checkout session.

Totals are only ever produced here. A recompute always runs in the same
order: subtotal, shipping options, shipping total, tax, discount and finally
the grand total, which never drops below zero.
"""

import decimal
import logging
from typing import List, Optional

from agentic_checkout.config import Settings
from agentic_checkout.enums import CouponType
from agentic_checkout.models import Address
from agentic_checkout.models import Amount
from agentic_checkout.models import LineItem
from agentic_checkout.models import quantize_amount
from agentic_checkout.models import ShippingOption
from agentic_checkout.models import ZERO
from agentic_checkout.services.catalog_service import CatalogProduct
from agentic_checkout.services.catalog_service import CouponInfo
from agentic_checkout.services.shipping_service import Destination
from agentic_checkout.services.shipping_service import PackageItem
from agentic_checkout.services.shipping_service import ShippingPackage
from agentic_checkout.services.shipping_service import ShippingService
from agentic_checkout.services.tax_service import TaxService
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class PricingResult(BaseModel):
  """The monetary state of a session after a recompute."""

  subtotal: Amount
  shipping_options: Optional[List[ShippingOption]] = None
  selected_shipping_method: Optional[str] = None
  shipping_total: Amount = ZERO
  tax_total: Amount = ZERO
  discount: Amount = ZERO
  total: Amount = ZERO


def build_line_item(product: CatalogProduct, quantity: int) -> LineItem:
  """Prices a single line from the catalog's authoritative unit price."""
  unit_price = quantize_amount(product.price)
  return LineItem(
      sku=product.sku,
      product_ref=product.product_ref,
      name=product.name,
      quantity=quantity,
      unit_price=unit_price,
      line_subtotal=quantize_amount(unit_price * quantity),
      tax_class=product.tax_class,
  )


def compute_discount(
    coupon: Optional[CouponInfo], subtotal: decimal.Decimal
) -> decimal.Decimal:
  """Returns the coupon discount for `subtotal`, capped at the subtotal."""
  if coupon is None:
    return ZERO
  if coupon.type == CouponType.PERCENT:
    discount = quantize_amount(subtotal * coupon.amount / 100)
  else:
    discount = quantize_amount(coupon.amount)
  return min(discount, subtotal)


class PricingEngine:
  """Computes subtotal, shipping, tax, discount and total."""

  def __init__(
      self,
      shipping_service: ShippingService,
      tax_service: TaxService,
      settings: Settings,
  ):
    self.shipping_service = shipping_service
    self.tax_service = tax_service
    self.settings = settings

  async def recompute(
      self,
      items: List[LineItem],
      shipping_address: Optional[Address] = None,
      billing_address: Optional[Address] = None,
      selected_shipping_method: Optional[str] = None,
      coupon: Optional[CouponInfo] = None,
  ) -> PricingResult:
    """Runs a full recompute of the session totals.

    Args:
      items: The priced line items.
      shipping_address: Destination; shipping options exist only with one.
      billing_address: Used for tax when there is no shipping address.
      selected_shipping_method: Previously chosen option id. It is dropped
        when the recomputed options no longer offer it.
      coupon: The applied coupon, if any.

    Returns:
      The new monetary state.
    """
    subtotal = quantize_amount(sum((i.line_subtotal for i in items), ZERO))

    shipping_options = None
    shipping_total = ZERO
    if shipping_address is not None:
      shipping_options = await self.calculate_shipping(items, shipping_address)
      offered = {o.id for o in shipping_options}
      if selected_shipping_method not in offered:
        if selected_shipping_method is not None:
          logger.info(
              "Shipping method %s no longer offered, dropping it",
              selected_shipping_method,
          )
        selected_shipping_method = None
      shipping_total = self._shipping_total(
          shipping_options, selected_shipping_method
      )
    else:
      selected_shipping_method = None

    tax_total = ZERO
    tax_address = shipping_address or billing_address
    if self.settings.tax_enabled and tax_address is not None:
      tax_total = await self.calculate_tax(items, tax_address, shipping_total)

    discount = compute_discount(coupon, subtotal)
    total = max(ZERO, subtotal + shipping_total + tax_total - discount)

    return PricingResult(
        subtotal=subtotal,
        shipping_options=shipping_options,
        selected_shipping_method=selected_shipping_method,
        shipping_total=shipping_total,
        tax_total=tax_total,
        discount=discount,
        total=total,
    )

  async def calculate_shipping(
      self, items: List[LineItem], address: Address
  ) -> List[ShippingOption]:
    """Asks the shipping collaborator for options to `address`."""
    if not address.country:
      return []
    package = ShippingPackage(
        contents=[
            PackageItem(
                sku=i.sku,
                product_ref=i.product_ref,
                quantity=i.quantity,
                line_total=i.line_subtotal,
            )
            for i in items
        ],
        contents_cost=sum((i.line_subtotal for i in items), ZERO),
        destination=Destination(
            country=address.country,
            state=address.state,
            postcode=address.postcode,
            city=address.city,
            address=address.address_1,
            address_2=address.address_2,
        ),
    )
    return await self.shipping_service.calculate_options(package)

  async def calculate_tax(
      self,
      items: List[LineItem],
      address: Address,
      shipping_total: decimal.Decimal,
  ) -> decimal.Decimal:
    """Taxes every line on its subtotal, then the shipping charge."""
    tax_total = ZERO
    for item in items:
      rates = await self.tax_service.find_rates(address, item.tax_class)
      tax_total += await self.tax_service.calc_tax(item.line_subtotal, rates)

    if self.settings.shipping_tax_enabled and shipping_total > ZERO:
      tax_class = self.settings.shipping_tax_class
      if tax_class == "inherit":
        tax_class = ""
      rates = await self.tax_service.find_rates(
          address, tax_class, for_shipping=True
      )
      tax_total += await self.tax_service.calc_tax(shipping_total, rates)

    return quantize_amount(tax_total)

  def _shipping_total(
      self,
      options: List[ShippingOption],
      selected_shipping_method: Optional[str],
  ) -> decimal.Decimal:
    for option in options:
      if option.id == selected_shipping_method:
        return option.amount.value
    if options:
      return options[0].amount.value
    return ZERO
