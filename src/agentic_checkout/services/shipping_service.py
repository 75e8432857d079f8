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

"""Shipping service for calculating shipping options.

This module encapsulates the logic for determining available shipping methods
and costs for a package bound to a destination.
"""

import decimal
from typing import List, Optional

from agentic_checkout import db
from agentic_checkout.models import Amount
from agentic_checkout.models import Money
from agentic_checkout.models import ShippingOption
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession


class PackageItem(BaseModel):
  sku: str
  product_ref: str
  quantity: int
  line_total: Amount


class Destination(BaseModel):
  country: str
  state: Optional[str] = None
  postcode: Optional[str] = None
  city: Optional[str] = None
  address: Optional[str] = None
  address_2: Optional[str] = None


class ShippingPackage(BaseModel):
  """Normalized description of what is shipped where."""

  contents: List[PackageItem]
  contents_cost: Amount
  destination: Destination


class ShippingService:
  """Service for handling shipping rate logic."""

  def __init__(self, session: AsyncSession, currency: str):
    self.session = session
    self.currency = currency

  async def calculate_options(
      self, package: ShippingPackage
  ) -> List[ShippingOption]:
    """Calculates available shipping options for the package.

    Args:
      package: The package contents and destination.

    Returns:
      A list of ShippingOption objects, cheapest first.
    """
    if not package.contents:
      return []

    db_rates = await db.get_shipping_rates(
        self.session, package.destination.country
    )

    # Deduplicate by service level, preferring a specific country match over
    # "default".
    rates_by_level = {}
    for rate in db_rates:
      if rate.service_level not in rates_by_level:
        rates_by_level[rate.service_level] = rate
      else:
        existing = rates_by_level[rate.service_level]
        if (
            existing.country_code == "default"
            and rate.country_code != "default"
        ):
          rates_by_level[rate.service_level] = rate

    # Sort for deterministic output
    sorted_rates = sorted(
        rates_by_level.values(), key=lambda r: (r.price, r.id)
    )
    return [
        ShippingOption(
            id=rate.id,
            label=rate.title,
            amount=Money(
                value=decimal.Decimal(rate.price) / 100,
                currency=self.currency,
            ),
        )
        for rate in sorted_rates
    ]
