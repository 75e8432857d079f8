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

"""Shared fixtures for tests that need a seeded catalog database."""

import asyncio
import os
import shutil
import tempfile
from typing import Any, Awaitable, Callable, List, Optional

from absl.testing import absltest
from agentic_checkout import db
from agentic_checkout import import_csv
from agentic_checkout.config import Settings
from agentic_checkout.models import OrderEvent
from agentic_checkout.services.catalog_service import CatalogService
from agentic_checkout.services.checkout_service import CheckoutService
from agentic_checkout.services.payment_processor import MockPaymentProcessor
from agentic_checkout.services.payment_processor import PaymentProcessor
from agentic_checkout.services.pricing_engine import PricingEngine
from agentic_checkout.services.session_store import SessionStore
from agentic_checkout.services.shipping_service import ShippingService
from agentic_checkout.services.tax_service import TaxService
from sqlalchemy.ext.asyncio import AsyncSession

API_KEY = "test-key"
WEBHOOK_URL = "https://agent.example/webhooks"
WEBHOOK_SECRET = "whsec_test"
BASE_URL = "https://shop.example"

US_ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address_1": "1 Market St",
    "city": "San Francisco",
    "state": "CA",
    "postcode": "94105",
    "country": "US",
}


def make_settings(db_path: str, **overrides: Any) -> Settings:
  values = dict(
      db_path=db_path,
      db_null_pool=True,
      api_key=API_KEY,
      test_mode=True,
      public_base_url=BASE_URL,
      webhook_url=WEBHOOK_URL,
      webhook_secret=WEBHOOK_SECRET,
      sweep_interval_seconds=0,
  )
  values.update(overrides)
  return Settings(**values)


class DatabaseTestCase(absltest.TestCase):
  """Creates a temporary database seeded from the bundled catalog CSVs."""

  settings_overrides = {}

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.db_path = os.path.join(self.test_dir, "test_checkout.db")
    self.settings = make_settings(self.db_path, **self.settings_overrides)
    self.manager = db.DatabaseManager()
    asyncio.run(self._init_db())

  def tearDown(self) -> None:
    asyncio.run(self.manager.close())
    shutil.rmtree(self.test_dir)
    super().tearDown()

  async def _init_db(self) -> None:
    await self.manager.init_db(self.db_path, null_pool=True)
    async with self.manager.session_factory() as session:
      await import_csv.import_csv_data(session, import_csv.DEFAULT_DATA_DIR)

  def run_in_session(self, fn: Callable[[AsyncSession], Awaitable[Any]]):
    """Runs `fn` with a fresh database session on a new event loop."""

    async def runner():
      async with self.manager.session_factory() as session:
        return await fn(session)

    return asyncio.run(runner())

  def make_checkout_service(
      self,
      session: AsyncSession,
      payment_processor: Optional[PaymentProcessor] = None,
      events: Optional[List[OrderEvent]] = None,
  ) -> CheckoutService:
    """Wires a CheckoutService the way the dependency providers do."""
    publish = events.append if events is not None else (lambda event: None)
    return CheckoutService(
        session,
        SessionStore(session),
        CatalogService(session),
        PricingEngine(
            ShippingService(session, self.settings.currency),
            TaxService(session),
            self.settings,
        ),
        payment_processor or MockPaymentProcessor(session, BASE_URL),
        self.settings,
        publish_event=publish,
    )

  def set_inventory(self, product_id: str, quantity: int) -> None:

    async def update(session):
      row = await session.get(db.Inventory, product_id)
      row.quantity = quantity
      await session.commit()

    self.run_in_session(update)

  def get_inventory(self, product_id: str) -> Optional[int]:
    return self.run_in_session(
        lambda session: db.get_inventory(session, product_id)
    )
