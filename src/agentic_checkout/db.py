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

"""Database management and persistence layer for the checkout server.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the server. It utilizes SQLAlchemy with
SQLite (via aiosqlite).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup.
- WAL Mode: Automatically enables SQLite Write-Ahead Logging so the request
  handlers, the webhook dispatcher and the session reaper can share the file.
- Declarative Models: Catalog tables backing the default collaborators
  (products, inventory, shipping and tax rates, coupons) and the engine state
  tables (checkout sessions, orders, request logs, idempotency records, rate
  limit counters and webhook deliveries). Every engine state row carries an
  `expires_at` timestamp that acts as its TTL.
- Data Access Helpers: A suite of asynchronous functions for CRUD operations.
  Read-modify-write transitions are expressed as conditional UPDATEs or
  insert-if-absent statements so the check and the write happen atomically.
"""

import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import delete
from sqlalchemy import Float
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

Base = declarative_base()


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, db_path: str, null_pool: bool = False) -> None:
    """Initializes the database engine and creates tables.

    Args:
      db_path: Path of the SQLite file.
      null_pool: Open a fresh connection per session instead of pooling. Used
        when the same file is driven from several event loops (tests).
    """
    url = f"sqlite+aiosqlite:///{db_path}"
    engine_kwargs: Dict[str, Any] = {
        "echo": False,
        "connect_args": {"timeout": 30},
    }
    if null_pool:
      engine_kwargs["poolclass"] = NullPool
    self.engine = create_async_engine(url, **engine_kwargs)

    # Enable WAL mode
    async with self.engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()


# --- Catalog (default collaborator storage) ---


class Product(Base):
  __tablename__ = "products"

  id = Column(String, primary_key=True)
  sku = Column(String, unique=True, index=True)
  title = Column(String)
  description = Column(String, nullable=True)
  price = Column(Integer)  # Price in cents
  image_url = Column(String, nullable=True)
  purchasable = Column(Boolean, default=True)
  manage_stock = Column(Boolean, default=True)
  # Only consulted when manage_stock is false: 'instock' or 'outofstock'.
  stock_status = Column(String, default="instock")
  tax_class = Column(String, default="")  # '' is the standard class


class Inventory(Base):
  __tablename__ = "inventory"

  product_id = Column(String, primary_key=True)
  quantity = Column(Integer, default=0)


class ShippingRate(Base):
  __tablename__ = "shipping_rates"

  id = Column(String, primary_key=True)
  country_code = Column(String)  # e.g., 'US', 'default'
  service_level = Column(String)  # e.g., 'standard', 'express'
  price = Column(Integer)  # In cents
  title = Column(String)


class TaxRate(Base):
  __tablename__ = "tax_rates"

  id = Column(String, primary_key=True)
  country_code = Column(String)  # '*' matches any country
  state = Column(String, nullable=True)  # NULL matches any state
  tax_class = Column(String, default="")
  rate = Column(Integer)  # Basis points, 825 == 8.25%
  shipping = Column(Boolean, default=True)  # Applies to shipping charges


class Coupon(Base):
  __tablename__ = "coupons"

  code = Column(String, primary_key=True)
  type = Column(String)  # 'percent' or 'fixed_cart'
  value = Column(Integer)  # Percentage (e.g., 10) or amount in cents
  description = Column(String)
  expires_at = Column(Float, nullable=True)  # Unix timestamp


# --- Engine state ---


class CheckoutSession(Base):
  __tablename__ = "checkouts"

  id = Column(String, primary_key=True)
  status = Column(String, index=True)
  # SQLAlchemy JSON type handles serialization automatically
  data = Column(JSON)
  order_id = Column(String, nullable=True)
  # Token of the request currently settling this session, if any.
  claim = Column(String, nullable=True)
  created_at = Column(Float)
  updated_at = Column(Float, index=True)
  expires_at = Column(Float, index=True)


class Order(Base):
  __tablename__ = "orders"

  id = Column(String, primary_key=True)
  checkout_session_id = Column(String, index=True)
  status = Column(String)
  data = Column(JSON)


class RequestLog(Base):
  __tablename__ = "request_logs"

  id = Column(Integer, primary_key=True, autoincrement=True)
  timestamp = Column(String)
  method = Column(String)
  url = Column(String)
  checkout_id = Column(String, nullable=True)
  payload = Column(JSON, nullable=True)


class IdempotencyRecord(Base):
  __tablename__ = "idempotency_records"

  key = Column(String, primary_key=True)
  endpoint = Column(String)
  request_params = Column(JSON)
  # Both NULL while the original request is still being processed.
  response_status = Column(Integer, nullable=True)
  response_body = Column(JSON, nullable=True)
  created_at = Column(Float)
  expires_at = Column(Float, index=True)


class RateLimitCounter(Base):
  __tablename__ = "rate_limit_counters"

  key = Column(String, primary_key=True)
  count = Column(Integer, default=0)
  window_started_at = Column(Float)
  expires_at = Column(Float, index=True)


class WebhookDelivery(Base):
  __tablename__ = "webhook_deliveries"

  key = Column(String, primary_key=True)
  order_id = Column(String)
  event_type = Column(String)
  target_status = Column(String)
  state = Column(String)
  reason = Column(String, nullable=True)
  terminal = Column(Boolean, default=False)
  version = Column(Integer, default=1)
  first_failed_at = Column(Float, nullable=True)
  updated_at = Column(Float)
  expires_at = Column(Float, index=True)


# --- Catalog Helpers ---


async def get_products_by_skus(
    session: AsyncSession, skus: Iterable[str]
) -> List[Product]:
  """Retrieves multiple products by SKU in a single query.

  Args:
    session: The database session to use.
    skus: The SKUs to look up.

  Returns:
    A list of matching Product objects (unknown SKUs are simply missing).
  """
  result = await session.execute(
      select(Product).where(Product.sku.in_(list(skus)))
  )
  return list(result.scalars().all())


async def get_all_products(session: AsyncSession) -> List[Product]:
  """Retrieves the whole catalog ordered by SKU."""
  result = await session.execute(select(Product).order_by(Product.sku))
  return list(result.scalars().all())


async def get_inventory_levels(
    session: AsyncSession, product_ids: Iterable[str]
) -> Dict[str, int]:
  """Retrieves inventory quantities for several products in a single query."""
  result = await session.execute(
      select(Inventory.product_id, Inventory.quantity).where(
          Inventory.product_id.in_(list(product_ids))
      )
  )
  return {row.product_id: row.quantity for row in result}


async def get_inventory(
    session: AsyncSession, product_id: str
) -> Optional[int]:
  """Retrieves the inventory quantity for a product."""
  result = await session.execute(
      select(Inventory.quantity).where(Inventory.product_id == product_id)
  )
  return result.scalar_one_or_none()


async def reserve_stock(
    session: AsyncSession, product_id: str, quantity: int
) -> bool:
  """Atomically decrements inventory if sufficient stock exists."""
  stmt = (
      update(Inventory)
      .where(Inventory.product_id == product_id)
      .where(Inventory.quantity >= quantity)
      .values(quantity=Inventory.quantity - quantity)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def get_shipping_rates(
    session: AsyncSession, country_code: str
) -> List[ShippingRate]:
  """Retrieves shipping rates for a specific country and default rates.

  Args:
    session: The database session to use.
    country_code: The ISO country code (e.g., 'US') to fetch rates for.

  Returns:
    A list of ShippingRate objects matching the country or 'default'.
  """
  result = await session.execute(
      select(ShippingRate).where(
          ShippingRate.country_code.in_([country_code, "default"])
      )
  )
  return list(result.scalars().all())


async def get_tax_rates(
    session: AsyncSession,
    country_code: str,
    state: Optional[str],
    tax_class: str,
) -> List[TaxRate]:
  """Retrieves tax rates matching a location and tax class.

  A rate matches when its country is the given one or '*', and its state is
  the given one or unset.
  """
  stmt = select(TaxRate).where(
      TaxRate.country_code.in_([country_code, "*"]),
      TaxRate.tax_class == tax_class,
  )
  if state:
    stmt = stmt.where((TaxRate.state.is_(None)) | (TaxRate.state == state))
  else:
    stmt = stmt.where(TaxRate.state.is_(None))
  result = await session.execute(stmt)
  return list(result.scalars().all())


async def get_coupon(session: AsyncSession, code: str) -> Optional[Coupon]:
  """Retrieves a coupon by code.

  Args:
    session: The database session to use.
    code: The coupon code to look up.

  Returns:
    The Coupon object if found, otherwise None.
  """
  return await session.get(Coupon, code)


# --- Checkout Session Helpers ---


async def get_checkout_row(
    session: AsyncSession, checkout_id: str
) -> Optional[CheckoutSession]:
  """Retrieves the raw checkout session row by ID."""
  result = await session.execute(
      select(CheckoutSession)
      .where(CheckoutSession.id == checkout_id)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def save_checkout(
    session: AsyncSession,
    checkout_id: str,
    status: str,
    checkout_obj: Dict[str, Any],
    created_at: float,
    updated_at: float,
    expires_at: float,
    order_id: Optional[str] = None,
) -> None:
  """Saves or updates a checkout session."""
  existing = await session.get(CheckoutSession, checkout_id)
  if existing:
    existing.status = status
    existing.data = checkout_obj
    existing.updated_at = updated_at
    existing.expires_at = expires_at
    existing.order_id = order_id
  else:
    session.add(
        CheckoutSession(
            id=checkout_id,
            status=status,
            data=checkout_obj,
            order_id=order_id,
            created_at=created_at,
            updated_at=updated_at,
            expires_at=expires_at,
        )
    )


async def delete_checkout(session: AsyncSession, checkout_id: str) -> bool:
  """Deletes a checkout session. Returns False if it was already gone."""
  result = await session.execute(
      delete(CheckoutSession).where(CheckoutSession.id == checkout_id)
  )
  return result.rowcount > 0


async def claim_checkout(
    session: AsyncSession, checkout_id: str, claim: str
) -> bool:
  """Atomically marks an active, unclaimed checkout as being settled."""
  stmt = (
      update(CheckoutSession)
      .where(CheckoutSession.id == checkout_id)
      .where(CheckoutSession.status == "active")
      .where(CheckoutSession.claim.is_(None))
      .values(claim=claim)
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def release_checkout_claim(
    session: AsyncSession, checkout_id: str, claim: str
) -> None:
  """Releases a claim previously taken with `claim_checkout`."""
  await session.execute(
      update(CheckoutSession)
      .where(CheckoutSession.id == checkout_id)
      .where(CheckoutSession.claim == claim)
      .values(claim=None)
      .execution_options(synchronize_session=False)
  )


async def save_claimed_checkout(
    session: AsyncSession,
    checkout_id: str,
    claim: str,
    status: str,
    checkout_obj: Dict[str, Any],
    updated_at: float,
    expires_at: float,
    order_id: Optional[str] = None,
) -> bool:
  """Saves the outcome of a settlement and releases its claim.

  Returns:
    False, writing nothing, if `claim` no longer holds the checkout.
  """
  result = await session.execute(
      update(CheckoutSession)
      .where(CheckoutSession.id == checkout_id)
      .where(CheckoutSession.claim == claim)
      .values(
          status=status,
          data=checkout_obj,
          updated_at=updated_at,
          expires_at=expires_at,
          order_id=order_id,
          claim=None,
      )
      .execution_options(synchronize_session=False)
  )
  return result.rowcount > 0


async def get_expired_checkout_ids(
    session: AsyncSession, now: float, limit: int
) -> List[str]:
  """Lists sessions whose TTL has passed."""
  result = await session.execute(
      select(CheckoutSession.id)
      .where(CheckoutSession.expires_at < now)
      .limit(limit)
  )
  return list(result.scalars().all())


async def get_stale_terminal_checkout_ids(
    session: AsyncSession, cutoff: float, limit: int
) -> List[str]:
  """Lists completed or failed sessions last updated before `cutoff`."""
  result = await session.execute(
      select(CheckoutSession.id)
      .where(CheckoutSession.status.in_(["completed", "failed"]))
      .where(CheckoutSession.updated_at < cutoff)
      .limit(limit)
  )
  return list(result.scalars().all())


async def get_abandoned_checkout_ids(
    session: AsyncSession, cutoff: float, limit: int
) -> List[str]:
  """Lists active sessions without an order last updated before `cutoff`."""
  result = await session.execute(
      select(CheckoutSession.id)
      .where(CheckoutSession.status == "active")
      .where(CheckoutSession.order_id.is_(None))
      .where(CheckoutSession.updated_at < cutoff)
      .limit(limit)
  )
  return list(result.scalars().all())


async def get_orphaned_checkout_ids(
    session: AsyncSession, order_statuses: Iterable[str], limit: int
) -> List[str]:
  """Lists sessions whose order has reached one of `order_statuses`."""
  result = await session.execute(
      select(CheckoutSession.id)
      .join(Order, Order.id == CheckoutSession.order_id)
      .where(Order.status.in_(list(order_statuses)))
      .limit(limit)
  )
  return list(result.scalars().all())


# --- Order Helpers ---


async def save_order(
    session: AsyncSession,
    order_id: str,
    checkout_session_id: str,
    status: str,
    order_obj: Dict[str, Any],
) -> None:
  """Saves or updates an order."""
  existing = await session.get(Order, order_id)
  if existing:
    existing.status = status
    existing.data = order_obj
  else:
    session.add(
        Order(
            id=order_id,
            checkout_session_id=checkout_session_id,
            status=status,
            data=order_obj,
        )
    )


async def get_order(
    session: AsyncSession, order_id: str
) -> Optional[Dict[str, Any]]:
  """Retrieves an order by ID."""
  result = await session.get(Order, order_id)
  if result:
    return result.data
  return None


async def log_request(
    session: AsyncSession,
    method: str,
    url: str,
    checkout_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
  """Logs an HTTP request to the database."""
  log_entry = RequestLog(
      timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
      method=method,
      url=url,
      checkout_id=checkout_id,
      payload=payload,
  )
  session.add(log_entry)


# --- Idempotency Helpers ---


async def get_idempotency_record(
    session: AsyncSession, key: str, now: float
) -> Optional[IdempotencyRecord]:
  """Retrieves an unexpired idempotency record by key."""
  result = await session.execute(
      select(IdempotencyRecord)
      .where(IdempotencyRecord.key == key)
      .where(IdempotencyRecord.expires_at > now)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def reserve_idempotency_record(
    session: AsyncSession,
    key: str,
    endpoint: str,
    request_params: Dict[str, Any],
    now: float,
    expires_at: float,
) -> bool:
  """Inserts a pending idempotency record unless one already exists.

  An expired record with the same key is removed first so the key can be
  reused once its retention window has passed.

  Returns:
    True if this call created the reservation.
  """
  await session.execute(
      delete(IdempotencyRecord)
      .where(IdempotencyRecord.key == key)
      .where(IdempotencyRecord.expires_at <= now)
  )
  stmt = (
      sqlite_insert(IdempotencyRecord)
      .values(
          key=key,
          endpoint=endpoint,
          request_params=request_params,
          created_at=now,
          expires_at=expires_at,
      )
      .on_conflict_do_nothing(index_elements=["key"])
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def complete_idempotency_record(
    session: AsyncSession,
    key: str,
    response_status: int,
    response_body: Any,
) -> None:
  """Stores the response of a reserved idempotency record."""
  await session.execute(
      update(IdempotencyRecord)
      .where(IdempotencyRecord.key == key)
      .where(IdempotencyRecord.response_status.is_(None))
      .values(response_status=response_status, response_body=response_body)
      .execution_options(synchronize_session=False)
  )


async def delete_idempotency_record(session: AsyncSession, key: str) -> None:
  """Removes a pending idempotency reservation."""
  await session.execute(
      delete(IdempotencyRecord)
      .where(IdempotencyRecord.key == key)
      .where(IdempotencyRecord.response_status.is_(None))
  )


# --- Rate Limit Helpers ---


async def increment_rate_limit_counter(
    session: AsyncSession, key: str, limit: int, now: float
) -> bool:
  """Increments a live counter that is still below `limit`."""
  stmt = (
      update(RateLimitCounter)
      .where(RateLimitCounter.key == key)
      .where(RateLimitCounter.expires_at > now)
      .where(RateLimitCounter.count < limit)
      .values(count=RateLimitCounter.count + 1)
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def start_rate_limit_window(
    session: AsyncSession, key: str, now: float, window: float
) -> bool:
  """Replaces an expired (or missing) counter with a fresh window of count 1.

  Returns:
    True if this call started the window, False if another request won.
  """
  await session.execute(
      delete(RateLimitCounter)
      .where(RateLimitCounter.key == key)
      .where(RateLimitCounter.expires_at <= now)
  )
  stmt = (
      sqlite_insert(RateLimitCounter)
      .values(key=key, count=1, window_started_at=now, expires_at=now + window)
      .on_conflict_do_nothing(index_elements=["key"])
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def get_rate_limit_counter(
    session: AsyncSession, key: str, now: float
) -> Optional[RateLimitCounter]:
  """Retrieves a live rate limit counter."""
  result = await session.execute(
      select(RateLimitCounter)
      .where(RateLimitCounter.key == key)
      .where(RateLimitCounter.expires_at > now)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


# --- Webhook Delivery Helpers ---


async def get_webhook_delivery(
    session: AsyncSession, key: str, now: float
) -> Optional[WebhookDelivery]:
  """Retrieves a live webhook delivery state record."""
  result = await session.execute(
      select(WebhookDelivery)
      .where(WebhookDelivery.key == key)
      .where(WebhookDelivery.expires_at > now)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def insert_webhook_delivery(
    session: AsyncSession, key: str, values: Dict[str, Any], now: float
) -> bool:
  """Creates a delivery record unless a live one exists.

  Returns:
    True if this call created the record.
  """
  await session.execute(
      delete(WebhookDelivery)
      .where(WebhookDelivery.key == key)
      .where(WebhookDelivery.expires_at <= now)
  )
  stmt = (
      sqlite_insert(WebhookDelivery)
      .values(key=key, version=1, **values)
      .on_conflict_do_nothing(index_elements=["key"])
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def compare_and_set_webhook_delivery(
    session: AsyncSession,
    key: str,
    expected_version: int,
    values: Dict[str, Any],
) -> bool:
  """Updates a delivery record only if nobody changed it since it was read."""
  stmt = (
      update(WebhookDelivery)
      .where(WebhookDelivery.key == key)
      .where(WebhookDelivery.version == expected_version)
      .values(version=expected_version + 1, **values)
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


# --- Sweeping ---


async def purge_expired_records(session: AsyncSession, now: float) -> int:
  """Deletes expired idempotency, rate limit and webhook delivery records."""
  total = 0
  for model in (IdempotencyRecord, RateLimitCounter, WebhookDelivery):
    result = await session.execute(delete(model).where(model.expires_at <= now))
    total += result.rowcount or 0
  return total
