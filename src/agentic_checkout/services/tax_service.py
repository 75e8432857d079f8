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

"""Tax rate lookup and calculation."""

import decimal
from typing import List

from agentic_checkout import db
from agentic_checkout.models import Address
from agentic_checkout.models import quantize_amount
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession


class TaxRateInfo(BaseModel):
  id: str
  percent: decimal.Decimal
  shipping: bool = True


class TaxService:
  """Finds tax rates by location and tax class."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def find_rates(
      self, address: Address, tax_class: str, for_shipping: bool = False
  ) -> List[TaxRateInfo]:
    """Returns the rates that apply to `tax_class` at `address`.

    Args:
      address: Where the goods are taxed. Without a country nothing applies.
      tax_class: The product tax class, '' for the standard class.
      for_shipping: Only return rates that also apply to shipping charges.
    """
    if not address.country:
      return []
    rates = await db.get_tax_rates(
        self.session, address.country, address.state, tax_class
    )
    result = [
        TaxRateInfo(
            id=r.id,
            percent=decimal.Decimal(r.rate) / 100,
            shipping=bool(r.shipping),
        )
        for r in rates
    ]
    if for_shipping:
      result = [r for r in result if r.shipping]
    return result

  async def calc_tax(
      self, amount: decimal.Decimal, rates: List[TaxRateInfo]
  ) -> decimal.Decimal:
    """Sums the tax of every rate on `amount`, each rounded to cents."""
    total = decimal.Decimal("0.00")
    for rate in rates:
      total += quantize_amount(amount * rate.percent / 100)
    return total
