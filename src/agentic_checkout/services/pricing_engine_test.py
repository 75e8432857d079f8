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

"""Tests for the pricing engine."""

import asyncio
from decimal import Decimal
from typing import Dict, List, Tuple

from absl.testing import absltest
from agentic_checkout.config import Settings
from agentic_checkout.enums import CouponType
from agentic_checkout.models import Address
from agentic_checkout.models import Money
from agentic_checkout.models import ShippingOption
from agentic_checkout.services.catalog_service import CatalogProduct
from agentic_checkout.services.catalog_service import CouponInfo
from agentic_checkout.services.pricing_engine import build_line_item
from agentic_checkout.services.pricing_engine import compute_discount
from agentic_checkout.services.pricing_engine import PricingEngine
from agentic_checkout.services.shipping_service import ShippingService
from agentic_checkout.services.tax_service import TaxRateInfo
from agentic_checkout.services.tax_service import TaxService

US = Address(country="US", state="CA")


def _option(option_id: str, value: str) -> ShippingOption:
  return ShippingOption(
      id=option_id,
      label=option_id,
      amount=Money(value=Decimal(value), currency="USD"),
  )


class FakeShippingService(ShippingService):

  def __init__(self, options: List[ShippingOption]):
    super().__init__(None, "USD")
    self.options = options

  async def calculate_options(self, package):
    if not package.contents:
      return []
    return list(self.options)


class FakeTaxService(TaxService):
  """Flat percentages keyed by (country, tax class)."""

  def __init__(self, rates: Dict[Tuple[str, str], str]):
    super().__init__(None)
    self.rates = rates
    self.calls = []

  async def find_rates(self, address, tax_class, for_shipping=False):
    self.calls.append((address.country, tax_class, for_shipping))
    percent = self.rates.get((address.country, tax_class))
    if percent is None:
      return []
    return [
        TaxRateInfo(id=f"{address.country}-{tax_class}", percent=percent)
    ]


def _product(sku: str, price: str, tax_class: str = "") -> CatalogProduct:
  return CatalogProduct(
      sku=sku,
      product_ref=f"prod_{sku.lower()}",
      name=sku.title(),
      price=Decimal(price),
      stock_quantity=100,
      tax_class=tax_class,
  )


class PricingEngineTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.shipping = FakeShippingService(
        [_option("std", "5.00"), _option("exp", "15.00")]
    )
    self.tax = FakeTaxService({("US", ""): "10", ("US", "reduced"): "5"})
    self.settings = Settings()
    self.engine = PricingEngine(self.shipping, self.tax, self.settings)

  def recompute(self, items, *args, **kwargs):
    return asyncio.run(self.engine.recompute(items, *args, **kwargs))

  def test_line_item_uses_catalog_price(self):
    item = build_line_item(_product("ROSE", "10.00"), 3)
    self.assertEqual(item.unit_price, Decimal("10.00"))
    self.assertEqual(item.line_subtotal, Decimal("30.00"))
    self.assertEqual(item.product_ref, "prod_rose")

  def test_no_address_has_no_shipping_options(self):
    items = [build_line_item(_product("ROSE", "10.00"), 2)]
    result = self.recompute(items)
    self.assertIsNone(result.shipping_options)
    self.assertIsNone(result.selected_shipping_method)
    self.assertEqual(result.shipping_total, Decimal("0.00"))
    self.assertEqual(result.tax_total, Decimal("0.00"))
    self.assertEqual(result.total, Decimal("20.00"))

  def test_shipping_defaults_to_cheapest_option(self):
    items = [build_line_item(_product("ROSE", "10.00"), 2)]
    result = self.recompute(items, US)
    self.assertEqual([o.id for o in result.shipping_options], ["std", "exp"])
    self.assertIsNone(result.selected_shipping_method)
    self.assertEqual(result.shipping_total, Decimal("5.00"))

  def test_selected_method_sets_shipping_total(self):
    items = [build_line_item(_product("ROSE", "10.00"), 2)]
    result = self.recompute(items, US, None, "exp")
    self.assertEqual(result.selected_shipping_method, "exp")
    self.assertEqual(result.shipping_total, Decimal("15.00"))

  def test_method_no_longer_offered_is_dropped(self):
    items = [build_line_item(_product("ROSE", "10.00"), 2)]
    result = self.recompute(items, US, None, "overnight")
    self.assertIsNone(result.selected_shipping_method)
    self.assertEqual(result.shipping_total, Decimal("5.00"))

  def test_tax_applies_to_items_and_shipping(self):
    items = [build_line_item(_product("ROSE", "10.00"), 2)]
    result = self.recompute(items, US)
    # 10% of 20.00 plus 10% of 5.00 shipping.
    self.assertEqual(result.tax_total, Decimal("2.50"))
    self.assertEqual(result.total, Decimal("27.50"))
    self.assertIn(("US", "", True), self.tax.calls)

  def test_total_is_sum_of_parts(self):
    items = [
        build_line_item(_product("ROSE", "10.00"), 2),
        build_line_item(_product("VASE", "25.00", "reduced"), 1),
    ]
    coupon = CouponInfo(code="save10", type=CouponType.PERCENT, amount=10)
    result = self.recompute(items, US, None, "exp", coupon)
    self.assertEqual(result.subtotal, Decimal("45.00"))
    self.assertEqual(result.shipping_total, Decimal("15.00"))
    # 2.00 + 1.25 on the items, 1.50 on shipping.
    self.assertEqual(result.tax_total, Decimal("4.75"))
    self.assertEqual(result.discount, Decimal("4.50"))
    self.assertEqual(
        result.total,
        result.subtotal
        + result.shipping_total
        + result.tax_total
        - result.discount,
    )

  def test_explicit_shipping_tax_class(self):
    self.settings.shipping_tax_class = "reduced"
    items = [build_line_item(_product("ROSE", "10.00"), 2)]
    result = self.recompute(items, US)
    # 10% of 20.00 plus 5% of 5.00.
    self.assertEqual(result.tax_total, Decimal("2.25"))

  def test_shipping_tax_can_be_disabled(self):
    self.settings.shipping_tax_enabled = False
    items = [build_line_item(_product("ROSE", "10.00"), 2)]
    result = self.recompute(items, US)
    self.assertEqual(result.tax_total, Decimal("2.00"))

  def test_tax_disabled(self):
    self.settings.tax_enabled = False
    items = [build_line_item(_product("ROSE", "10.00"), 2)]
    result = self.recompute(items, US)
    self.assertEqual(result.tax_total, Decimal("0.00"))
    self.assertEqual(result.total, Decimal("25.00"))

  def test_billing_address_is_used_for_tax_without_shipping(self):
    items = [build_line_item(_product("ROSE", "10.00"), 2)]
    result = self.recompute(items, None, US)
    self.assertIsNone(result.shipping_options)
    self.assertEqual(result.tax_total, Decimal("2.00"))

  def test_percent_coupon(self):
    items = [build_line_item(_product("BOUQUET", "50.00"), 1)]
    coupon = CouponInfo(code="save10", type=CouponType.PERCENT, amount=10)
    result = self.recompute(items, coupon=coupon)
    self.assertEqual(result.discount, Decimal("5.00"))
    self.assertEqual(result.total, Decimal("45.00"))

  def test_fixed_coupon_is_capped_and_total_floored(self):
    items = [build_line_item(_product("BOUQUET", "50.00"), 1)]
    coupon = CouponInfo(
        code="fixed100", type=CouponType.FIXED_CART, amount=100
    )
    result = self.recompute(items, coupon=coupon)
    self.assertEqual(result.discount, Decimal("50.00"))
    self.assertEqual(result.total, Decimal("0.00"))

  def test_fixed_coupon_does_not_reduce_below_zero_with_shipping(self):
    items = [build_line_item(_product("ROSE", "10.00"), 1)]
    coupon = CouponInfo(code="big", type=CouponType.FIXED_CART, amount=100)
    result = self.recompute(items, US, coupon=coupon)
    # The discount is capped at the subtotal, shipping and tax remain.
    self.assertEqual(result.discount, Decimal("10.00"))
    self.assertEqual(result.total, Decimal("6.50"))

  def test_amounts_round_half_up_to_cents(self):
    self.tax.rates[("US", "")] = "8.25"
    items = [build_line_item(_product("ROSE", "3.33"), 3)]
    result = self.recompute(items, None, US)
    self.assertEqual(result.subtotal, Decimal("9.99"))
    # 9.99 * 8.25% = 0.824175
    self.assertEqual(result.tax_total, Decimal("0.82"))

  def test_discount_rounding(self):
    coupon = CouponInfo(code="p15", type=CouponType.PERCENT, amount=15)
    self.assertEqual(
        compute_discount(coupon, Decimal("10.10")), Decimal("1.52")
    )
    self.assertEqual(compute_discount(None, Decimal("10.10")), Decimal("0"))


if __name__ == "__main__":
  absltest.main()
