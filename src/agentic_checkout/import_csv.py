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

"""Database initialization script for the checkout server.

This script imports the catalog (products, inventory, shipping rates, tax
rates and coupons) from CSV files into the configured SQLite database. It
clears any existing data in those tables before populating them with the new
dataset. Checkout sessions, orders and the other engine state are left alone.

Usage:
  import-catalog --db_path=... [--data_dir=...]
"""

import asyncio
import csv
import logging
import os
from typing import Dict, Sequence

from absl import app as absl_app
from absl import flags
from agentic_checkout import config
from agentic_checkout import db
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

FLAGS = config.FLAGS

DEFAULT_DATA_DIR = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "data"
)

try:
  flags.DEFINE_string(
      "data_dir",
      DEFAULT_DATA_DIR,
      "Directory containing products.csv, inventory.csv, shipping_rates.csv,"
      " tax_rates.csv and coupons.csv",
  )
except flags.DuplicateFlagError:
  pass

logger = logging.getLogger(__name__)


def _bool(value: str) -> bool:
  return value.strip().lower() in ("1", "true", "yes")


def _product(row: Dict[str, str]) -> db.Product:
  return db.Product(
      id=row["id"],
      sku=row["sku"],
      title=row["title"],
      description=row.get("description") or None,
      price=int(row["price"]),
      image_url=row.get("image_url") or None,
      purchasable=_bool(row.get("purchasable", "true")),
      manage_stock=_bool(row.get("manage_stock", "true")),
      stock_status=row.get("stock_status") or "instock",
      tax_class=row.get("tax_class") or "",
  )


def _inventory(row: Dict[str, str]) -> db.Inventory:
  return db.Inventory(
      product_id=row["product_id"], quantity=int(row["quantity"])
  )


def _shipping_rate(row: Dict[str, str]) -> db.ShippingRate:
  return db.ShippingRate(
      id=row["id"],
      country_code=row["country_code"],
      service_level=row["service_level"],
      price=int(row["price"]),
      title=row["title"],
  )


def _tax_rate(row: Dict[str, str]) -> db.TaxRate:
  return db.TaxRate(
      id=row["id"],
      country_code=row["country_code"],
      state=row.get("state") or None,
      tax_class=row.get("tax_class") or "",
      rate=int(row["rate"]),
      shipping=_bool(row.get("shipping", "true")),
  )


def _coupon(row: Dict[str, str]) -> db.Coupon:
  return db.Coupon(
      # Codes are matched case-insensitively.
      code=row["code"].strip().lower(),
      type=row["type"],
      value=int(row["value"]),
      description=row["description"],
      expires_at=float(row["expires_at"]) if row.get("expires_at") else None,
  )


# (file name, table, row converter, required)
_IMPORTS = (
    ("products.csv", db.Product, _product, True),
    ("inventory.csv", db.Inventory, _inventory, True),
    ("shipping_rates.csv", db.ShippingRate, _shipping_rate, False),
    ("tax_rates.csv", db.TaxRate, _tax_rate, False),
    ("coupons.csv", db.Coupon, _coupon, False),
)


async def import_csv_data(session: AsyncSession, data_dir: str) -> None:
  """Replaces the catalog tables with the CSV files found in `data_dir`."""
  for filename, model, converter, required in _IMPORTS:
    path = os.path.join(data_dir, filename)
    logger.info("Clearing existing %s...", model.__tablename__)
    await session.execute(delete(model))
    if not os.path.exists(path):
      if required:
        raise FileNotFoundError(path)
      continue
    logger.info("Importing %s from CSV...", model.__tablename__)
    with open(path, "r", newline="") as f:
      session.add_all([converter(row) for row in csv.DictReader(f)])
  await session.commit()


async def _run(db_path: str, data_dir: str) -> None:
  manager = db.DatabaseManager()
  # Ensure tables exist
  await manager.init_db(db_path)
  try:
    async with manager.session_factory() as session:
      await import_csv_data(session, data_dir)
    logger.info("Catalog import complete")
  finally:
    await manager.close()


def main(argv: Sequence[str]) -> None:
  del argv  # Unused.
  if FLAGS.db_path is None:
    logger.error("--db_path must be provided.")
    raise SystemExit(1)
  asyncio.run(_run(FLAGS.db_path, FLAGS.data_dir))


def run() -> None:
  logging.basicConfig(level=logging.INFO)
  absl_app.run(main)


if __name__ == "__main__":
  run()
