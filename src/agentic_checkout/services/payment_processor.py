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

"""Payment collaborator interface and the mock gateway used by default."""

import abc
import logging
import uuid

from agentic_checkout import db
from agentic_checkout.enums import OrderStatus
from agentic_checkout.enums import PaymentStatus
from agentic_checkout.exceptions import DependencyError
from agentic_checkout.exceptions import OutOfStockError
from agentic_checkout.exceptions import PaymentError
from agentic_checkout.models import ActiveSession
from agentic_checkout.models import Order
from agentic_checkout.models import PaymentData
from agentic_checkout.models import PaymentResult
from agentic_checkout.models import utcnow
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_AUTHENTICATION_URL = "https://3ds.payments.example/authenticate/{order_id}"

# Mock tokens and the gateway error code each one triggers.
_DECLINED_TOKENS = {
    "fail_token": ("payment_declined", "Card declined by issuer"),
    "insufficient_funds_token": (
        "insufficient_funds",
        "Card has insufficient funds",
    ),
    "expired_token": (
        "shared_payment_token_expired",
        "Shared payment token expired",
    ),
    "used_token": (
        "shared_payment_token_used",
        "Shared payment token already consumed",
    ),
}


class PaymentProcessor(abc.ABC):
  """Settles a checkout session with a payment gateway."""

  @abc.abstractmethod
  async def process_payment(
      self, session: ActiveSession, payment_data: PaymentData
  ) -> PaymentResult:
    """Charges the session total.

    Args:
      session: The active session, billing address already merged with the
        buyer's contact fields.
      payment_data: Token and provider supplied by the agent.

    Returns:
      The payment outcome with the id of the order it created.

    Raises:
      PaymentError: The gateway declined the payment.
      DependencyError: The gateway could not be reached.
    """


class MockPaymentProcessor(PaymentProcessor):
  """Mock Payment Processor deciding the outcome from the token.

  Any token not listed above succeeds. On success the order is written and
  stock is decremented in the caller's transaction.
  """

  def __init__(self, session: AsyncSession, base_url: str):
    self.session = session
    self.base_url = base_url.rstrip("/")

  async def process_payment(
      self, session: ActiveSession, payment_data: PaymentData
  ) -> PaymentResult:
    token = payment_data.token
    if token == "unavailable_token":
      raise DependencyError("Payment gateway unreachable")
    if token in _DECLINED_TOKENS:
      code, reason = _DECLINED_TOKENS[token]
      raise PaymentError(reason, code=code)

    if token == "3ds_token":
      order = await self._create_order(session, OrderStatus.PENDING)
      logger.info("Payment for order %s requires authentication", order.id)
      return PaymentResult(
          status=PaymentStatus.REQUIRES_ACTION,
          order_id=order.id,
          redirect_url=_AUTHENTICATION_URL.format(order_id=order.id),
      )

    await self._reserve_stock(session)
    order = await self._create_order(session, OrderStatus.PROCESSING)
    logger.info("Payment succeeded for order %s", order.id)
    return PaymentResult(status=PaymentStatus.SUCCEEDED, order_id=order.id)

  async def _reserve_stock(self, session: ActiveSession) -> None:
    products = await db.get_products_by_skus(
        self.session, [i.sku for i in session.items]
    )
    managed = {p.sku for p in products if p.manage_stock}
    for item in session.items:
      if item.sku not in managed:
        continue
      if not await db.reserve_stock(
          self.session, item.product_ref, item.quantity
      ):
        raise OutOfStockError(
            f"Insufficient stock for {item.name}",
            code="insufficient_stock",
            details={"sku": item.sku},
        )

  async def _create_order(
      self, session: ActiveSession, status: OrderStatus
  ) -> Order:
    order_id = str(uuid.uuid4())
    now = utcnow()
    order = Order(
        id=order_id,
        checkout_session_id=session.id,
        status=status,
        permalink_url=f"{self.base_url}/orders/{order_id}",
        total=session.total,
        currency=session.currency,
        created_at=now,
        updated_at=now,
    )
    await db.save_order(
        self.session,
        order.id,
        session.id,
        order.status.value,
        order.model_dump(mode="json"),
    )
    return order
