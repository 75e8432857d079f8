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

"""Checkout service for managing the lifecycle of checkout sessions.

This module provides the `CheckoutService` class, which encapsulates the
business logic for creating, retrieving, updating, cancelling and completing
checkout sessions, and for the order records completion produces.

Key responsibilities include:
- Validating requested items against the catalog and its stock.
- Delegating every total to the `PricingEngine` after any change.
- Enforcing the session state machine: only active sessions change, and they
  only ever become completed, cancelled or failed.
- Claiming the session before re-validating stock and charging it, so two
  concurrent completions never both reach the payment gateway and only the
  claim holder writes the outcome.
- Publishing order lifecycle events for the webhook dispatcher.
"""

import collections
import datetime
import logging
from typing import Any, Callable, Dict, List, Optional, Type
import uuid

from agentic_checkout import db
from agentic_checkout.config import Settings
from agentic_checkout.enums import PaymentStatus
from agentic_checkout.enums import SessionStatus
from agentic_checkout.enums import WebhookEvent
from agentic_checkout.exceptions import DependencyError
from agentic_checkout.exceptions import InvalidStateError
from agentic_checkout.exceptions import NotFoundError
from agentic_checkout.exceptions import OutOfStockError
from agentic_checkout.exceptions import PaymentError
from agentic_checkout.exceptions import ValidationError
from agentic_checkout.models import ActiveSession
from agentic_checkout.models import Address
from agentic_checkout.models import Buyer
from agentic_checkout.models import CancelledSession
from agentic_checkout.models import CheckoutSession
from agentic_checkout.models import CompletedSession
from agentic_checkout.models import CompleteSessionRequest
from agentic_checkout.models import CreateSessionRequest
from agentic_checkout.models import FailedSession
from agentic_checkout.models import ItemRequest
from agentic_checkout.models import LineItem
from agentic_checkout.models import Order
from agentic_checkout.models import OrderEvent
from agentic_checkout.models import OrderUpdateRequest
from agentic_checkout.models import Refund
from agentic_checkout.models import UpdateSessionRequest
from agentic_checkout.models import utcnow
from agentic_checkout.models import ZERO
from agentic_checkout.services.catalog_service import CatalogProduct
from agentic_checkout.services.catalog_service import CatalogService
from agentic_checkout.services.catalog_service import CouponInfo
from agentic_checkout.services.payment_processor import PaymentProcessor
from agentic_checkout.services.pricing_engine import build_line_item
from agentic_checkout.services.pricing_engine import PricingEngine
from agentic_checkout.services.pricing_engine import PricingResult
from agentic_checkout.services.session_store import SessionStore
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

EventPublisher = Callable[[OrderEvent], None]


def _discard_event(event: OrderEvent) -> None:
  del event  # Unused.


def merge_buyer(
    address: Optional[Address], buyer: Optional[Buyer]
) -> Optional[Address]:
  """Fills the billing address contact fields from the buyer."""
  if buyer is None:
    return address
  merged = address.model_copy() if address else Address()
  if buyer.email:
    merged.email = buyer.email
  phone = buyer.phone_number or buyer.phone
  if phone:
    merged.phone = phone
  if buyer.first_name:
    merged.first_name = buyer.first_name
  if buyer.last_name:
    merged.last_name = buyer.last_name
  return merged


class CheckoutService:
  """Service for managing checkout sessions and orders."""

  def __init__(
      self,
      session: AsyncSession,
      store: SessionStore,
      catalog: CatalogService,
      pricing: PricingEngine,
      payment_processor: PaymentProcessor,
      settings: Settings,
      publish_event: EventPublisher = _discard_event,
  ):
    self.session = session
    self.store = store
    self.catalog = catalog
    self.pricing = pricing
    self.payment_processor = payment_processor
    self.settings = settings
    self.publish_event = publish_event

  async def create_session(self, req: CreateSessionRequest) -> Dict[str, Any]:
    """Creates a new checkout session."""
    logger.info("Creating checkout session")
    items = await self._build_items(req.items)
    pricing = await self.pricing.recompute(
        items, req.shipping_address, req.billing_address
    )

    now = utcnow()
    record = ActiveSession.model_validate(
        dict(
            pricing.model_dump(),
            id=f"checkout_{uuid.uuid4().hex}",
            items=items,
            currency=self.settings.currency,
            shipping_address=req.shipping_address,
            billing_address=req.billing_address,
            created_at=now,
            updated_at=now,
            expires_at=self._active_expiry(now),
        )
    )

    await self.store.save(record)
    await db.log_request(
        self.session,
        method="POST",
        url="/checkout_sessions",
        checkout_id=record.id,
        payload=req.model_dump(mode="json", exclude_unset=True),
    )
    await self.session.commit()
    logger.info("Created checkout session %s", record.id)
    return record.to_response()

  async def get_session(self, checkout_id: str) -> Dict[str, Any]:
    """Retrieves a checkout session."""
    record = await self._get_and_validate_session(checkout_id)
    return record.to_response()

  async def update_session(
      self, checkout_id: str, req: UpdateSessionRequest
  ) -> Dict[str, Any]:
    """Applies a partial update and recomputes every total."""
    logger.info("Updating checkout session %s", checkout_id)
    record = await self._get_and_validate_session(checkout_id)
    self._ensure_active(record, "update")

    fields = req.model_fields_set
    items = record.items
    if "items" in fields:
      items = await self._build_items(req.items)
    shipping_address = record.shipping_address
    if "shipping_address" in fields:
      shipping_address = req.shipping_address
    billing_address = record.billing_address
    if "billing_address" in fields:
      billing_address = req.billing_address

    coupon = await self._resolve_coupon(record, req)

    selected = record.selected_shipping_method
    wants_method = "shipping_method" in fields and req.shipping_method
    if wants_method:
      selected = req.shipping_method

    pricing = await self.pricing.recompute(
        items, shipping_address, billing_address, selected, coupon
    )
    if wants_method and pricing.selected_shipping_method != selected:
      raise ValidationError(
          f"Shipping method '{selected}' is not available",
          code="invalid_shipping_method",
      )

    now = utcnow()
    updated = self._transition(
        record,
        ActiveSession,
        pricing=pricing,
        coupon=coupon,
        items=items,
        shipping_address=shipping_address,
        billing_address=billing_address,
        updated_at=now,
        expires_at=self._active_expiry(now),
    )

    await self.store.save(updated)
    await db.log_request(
        self.session,
        method="POST",
        url=f"/checkout_sessions/{checkout_id}",
        checkout_id=checkout_id,
        payload=req.model_dump(mode="json", exclude_unset=True),
    )
    await self.session.commit()
    return updated.to_response()

  async def cancel_session(self, checkout_id: str) -> Dict[str, Any]:
    """Cancels an active session and removes it."""
    logger.info("Cancelling checkout session %s", checkout_id)
    record = await self._get_and_validate_session(checkout_id)
    self._ensure_active(record, "cancel")

    cancelled = self._transition(
        record, CancelledSession, updated_at=utcnow()
    )
    await self.store.save(cancelled)
    await self.store.delete(checkout_id)
    await db.log_request(
        self.session,
        method="POST",
        url=f"/checkout_sessions/{checkout_id}/cancel",
        checkout_id=checkout_id,
    )
    await self.session.commit()
    return {
        "id": checkout_id,
        "status": SessionStatus.CANCELLED.value,
        "message": "Checkout session cancelled",
    }

  async def complete_session(
      self, checkout_id: str, req: CompleteSessionRequest
  ) -> Dict[str, Any]:
    """Charges the session and turns it into an order."""
    logger.info("Completing checkout session %s", checkout_id)
    record = await self._get_and_validate_session(checkout_id)
    self._ensure_active(record, "complete")

    token = req.payment.token if req.payment else None
    if not token or not token.strip():
      raise ValidationError(
          "Payment token is required", code="missing_payment_token"
      )

    await db.log_request(
        self.session,
        method="POST",
        url=f"/checkout_sessions/{checkout_id}/complete",
        checkout_id=checkout_id,
        payload={
            "provider": req.payment.provider,
            "has_buyer": req.buyer is not None,
        },
    )
    await self.session.commit()

    # Nothing below writes to the session without holding the claim.
    claim = uuid.uuid4().hex
    claimed = await self.store.claim(checkout_id, claim)
    await self.session.commit()
    if not claimed:
      raise InvalidStateError(
          "Checkout session is being completed by another request",
          code="session_locked",
      )

    try:
      return await self._settle(record, req, claim)
    except Exception:
      await self.session.rollback()
      # A no-op once an outcome has been saved under the claim.
      await self.store.release(checkout_id, claim)
      await self.session.commit()
      raise

  async def _settle(
      self,
      record: CheckoutSession,
      req: CompleteSessionRequest,
      claim: str,
  ) -> Dict[str, Any]:
    """Re-validates, charges and finalizes a claimed session."""
    checkout_id = record.id
    shipping_address = req.shipping_address or record.shipping_address
    billing_address = merge_buyer(
        req.billing_address or record.billing_address, req.buyer
    )

    # Stock may have moved since the session was priced.
    products = await self.catalog.get_products_by_skus(
        [i.sku for i in record.items]
    )
    try:
      for item in record.items:
        self._check_available(
            products.get(item.sku),
            item.sku,
            item.quantity,
            at_completion=True,
        )
    except OutOfStockError as e:
      await self._fail(record, claim, f"{e.code}: {e.message}")
      raise

    # New addresses can change shipping and tax.
    pricing, coupon = None, ...
    if req.shipping_address is not None or req.billing_address is not None:
      coupon = await self._current_coupon(record)
      pricing = await self.pricing.recompute(
          record.items,
          shipping_address,
          billing_address,
          record.selected_shipping_method,
          coupon,
      )
    active = self._transition(
        record,
        ActiveSession,
        pricing=pricing,
        coupon=coupon,
        shipping_address=shipping_address,
        billing_address=billing_address,
    )

    try:
      result = await self.payment_processor.process_payment(
          active, req.payment
      )
    except PaymentError as e:
      await self.session.rollback()
      logger.warning(
          "Payment failed for checkout %s (%s): %s",
          checkout_id,
          e.code,
          e.raw_message,
      )
      await self._fail(active, claim, f"{e.code}: {e.raw_message}")
      raise e.to_user_error() from None
    except OutOfStockError as e:
      await self.session.rollback()
      logger.warning(
          "Stock ran out while completing checkout %s: %s",
          checkout_id,
          e.message,
      )
      await self._fail(active, claim, f"{e.code}: {e.message}")
      raise
    except DependencyError as e:
      await self.session.rollback()
      logger.error(
          "Payment gateway unavailable for checkout %s: %s",
          checkout_id,
          e.message,
      )
      await self._fail(active, claim, f"{e.code}: {e.message}")
      raise

    if result.status == PaymentStatus.REQUIRES_ACTION:
      # Stays active and unclaimed so the buyer can finish later.
      await self.store.save_claimed(active, claim)
      await self.session.commit()
      return {
          "id": checkout_id,
          "status": result.status.value,
          "redirect_url": result.redirect_url,
          "order_id": result.order_id,
      }

    now = utcnow()
    completed = self._transition(
        active,
        CompletedSession,
        order_ref=result.order_id,
        updated_at=now,
        expires_at=self._terminal_expiry(now),
    )
    if not await self.store.save_claimed(completed, claim):
      logger.error(
          "Lost the claim on checkout %s after charging order %s",
          checkout_id,
          result.order_id,
      )
    await self.session.commit()

    order = await self._get_and_validate_order(result.order_id)
    self.publish_event(
        OrderEvent(event_type=WebhookEvent.ORDER_CREATED, order=order)
    )
    logger.info(
        "Checkout session %s completed as order %s", checkout_id, order.id
    )

    response = completed.to_response()
    response["order"] = order.summary()
    return response

  async def get_order(self, order_id: str) -> Dict[str, Any]:
    """Retrieves an order."""
    order = await self._get_and_validate_order(order_id)
    return order.model_dump(mode="json")

  async def update_order(
      self, order_id: str, req: OrderUpdateRequest
  ) -> Dict[str, Any]:
    """Changes an order's status and records refunds."""
    order = await self._get_and_validate_order(order_id)

    refunds = list(order.refunds)
    for refund in req.refunds or []:
      refunds.append(
          Refund(
              id=f"refund_{uuid.uuid4().hex}",
              amount=refund.amount,
              reason=refund.reason,
          )
      )
    refunded = sum((r.amount for r in refunds), ZERO)
    if refunded > order.total:
      raise ValidationError(
          "Refunds exceed the order total", code="invalid_refund"
      )

    status = req.status or order.status
    updated = order.model_copy(
        update={"status": status, "refunds": refunds, "updated_at": utcnow()}
    )
    await db.save_order(
        self.session,
        order_id,
        order.checkout_session_id,
        updated.status.value,
        updated.model_dump(mode="json"),
    )
    await db.log_request(
        self.session,
        method="PUT",
        url=f"/orders/{order_id}",
        payload=req.model_dump(mode="json", exclude_unset=True),
    )
    await self.session.commit()

    if updated.status != order.status or req.refunds:
      self.publish_event(
          OrderEvent(event_type=WebhookEvent.ORDER_UPDATED, order=updated)
      )
    return updated.model_dump(mode="json")

  async def _get_and_validate_session(
      self, checkout_id: str
  ) -> CheckoutSession:
    """Retrieves a checkout session and validates its existence."""
    record = await self.store.get(checkout_id)
    if record is None:
      raise NotFoundError(
          "Checkout session not found", code="session_not_found"
      )
    return record

  async def _get_and_validate_order(self, order_id: str) -> Order:
    data = await db.get_order(self.session, order_id)
    if not data:
      raise NotFoundError("Order not found", code="order_not_found")
    return Order.model_validate(data)

  def _ensure_active(self, record: CheckoutSession, action: str) -> None:
    """Ensures that the session is in a state that allows modification."""
    if record.status != SessionStatus.ACTIVE.value:
      raise InvalidStateError(
          f"Cannot {action} checkout in state '{record.status}'"
      )

  async def _build_items(
      self, requested: Optional[List[ItemRequest]]
  ) -> List[LineItem]:
    """Validates requested items and prices them from the catalog."""
    if not requested:
      raise ValidationError(
          "At least one item is required", code="missing_items"
      )

    quantities = collections.OrderedDict()
    for item in requested:
      if not isinstance(item.sku, str) or not item.sku.strip():
        raise ValidationError("Each item requires a sku", code="missing_sku")
      sku = item.sku.strip()
      quantity = item.quantity
      if (
          isinstance(quantity, bool)
          or not isinstance(quantity, int)
          or quantity < 1
      ):
        raise ValidationError(
            f"Invalid quantity for {sku}",
            code="invalid_quantity",
            details={"sku": sku},
        )
      quantities[sku] = quantities.get(sku, 0) + quantity

    products = await self.catalog.get_products_by_skus(quantities.keys())
    for sku, quantity in quantities.items():
      self._check_available(products.get(sku), sku, quantity)
    return [
        build_line_item(products[sku], quantity)
        for sku, quantity in quantities.items()
    ]

  def _check_available(
      self,
      product: Optional[CatalogProduct],
      sku: str,
      quantity: int,
      at_completion: bool = False,
  ) -> None:
    """Raises unless `quantity` of the product can be sold right now."""
    if product is None or (at_completion and not product.purchasable):
      if at_completion:
        raise OutOfStockError(
            f"Product {sku} is no longer available",
            code="product_not_available",
            details={"sku": sku},
        )
      raise ValidationError(
          f"Product {sku} not found",
          code="product_not_found",
          details={"sku": sku},
      )
    if not product.purchasable:
      raise ValidationError(
          f"Product {sku} cannot be purchased",
          code="product_not_purchasable",
          details={"sku": sku},
      )
    if not product.in_stock:
      raise OutOfStockError(
          f"{product.name} is out of stock", details={"sku": sku}
      )
    if product.manage_stock and quantity > (product.stock_quantity or 0):
      raise OutOfStockError(
          f"Insufficient stock for {product.name}",
          code="insufficient_stock",
          details={"sku": sku, "available": product.stock_quantity or 0},
      )

  async def _resolve_coupon(
      self, record: CheckoutSession, req: UpdateSessionRequest
  ) -> Optional[CouponInfo]:
    """Works out the coupon that applies after an update."""
    fields = req.model_fields_set
    if req.remove_coupon or ("coupon_code" in fields and not req.coupon_code):
      return None
    if req.coupon_code:
      coupon = await self.catalog.get_coupon(req.coupon_code)
      if coupon is None:
        raise ValidationError(
            f"Coupon '{req.coupon_code}' is not valid",
            code="invalid_coupon",
        )
      return coupon
    return await self._current_coupon(record)

  async def _current_coupon(
      self, record: CheckoutSession
  ) -> Optional[CouponInfo]:
    if record.coupon_code is None:
      return None
    coupon = await self.catalog.get_coupon(record.coupon_code)
    if coupon is None:
      logger.info(
          "Coupon %s on checkout %s is no longer valid, removing it",
          record.coupon_code,
          record.id,
      )
    return coupon

  def _transition(
      self,
      record: CheckoutSession,
      cls: Type[CheckoutSession],
      pricing: Optional[PricingResult] = None,
      coupon: Any = ...,
      **changes: Any,
  ) -> CheckoutSession:
    """Builds a validated copy of `record` as `cls` with `changes` applied.

    Args:
      record: The session to start from.
      cls: The session variant to produce.
      pricing: A fresh recompute whose totals replace the stored ones.
      coupon: The coupon the recompute used. Leave unset to keep the
        current one.
      **changes: Any other fields to overwrite.
    """
    data = record.model_dump(exclude={"status"})
    if pricing is not None:
      data.update(pricing.model_dump())
    if coupon is not ...:
      data["coupon_code"] = coupon.code if coupon else None
      data["coupon_discount"] = data["discount"] if coupon else 0
    data.update(changes)
    return cls.model_validate(data)

  async def _fail(
      self, record: CheckoutSession, claim: str, reason: str
  ) -> None:
    """Marks a claimed session failed, keeping the raw reason for audit."""
    now = utcnow()
    failed = self._transition(
        record,
        FailedSession,
        error=reason,
        updated_at=now,
        expires_at=self._terminal_expiry(now),
    )
    saved = await self.store.save_claimed(failed, claim)
    await self.session.commit()
    if not saved:
      logger.warning(
          "Checkout session %s not marked failed, claim no longer held: %s",
          record.id,
          reason,
      )
      return
    logger.info("Checkout session %s failed: %s", record.id, reason)

  def _active_expiry(self, now: datetime.datetime) -> datetime.datetime:
    return now + datetime.timedelta(seconds=self.settings.session_ttl_seconds)

  def _terminal_expiry(self, now: datetime.datetime) -> datetime.datetime:
    return now + datetime.timedelta(
        seconds=self.settings.audit_retention_seconds
    )
