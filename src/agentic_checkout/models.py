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

"""Models for the agentic checkout server.

The checkout session is a discriminated union on `status`, so a completed
session always carries its order reference and a failed one always carries
the failure reason. Monetary amounts are `Decimal` values quantized to cents
that serialize as JSON numbers.
"""

import datetime
import decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from agentic_checkout.enums import OrderStatus
from agentic_checkout.enums import PaymentStatus
from agentic_checkout.enums import WebhookEvent
from pydantic import BaseModel
from pydantic import BeforeValidator
from pydantic import ConfigDict
from pydantic import Field
from pydantic import model_validator
from pydantic import PlainSerializer
from pydantic import TypeAdapter

CENT = decimal.Decimal("0.01")
ZERO = decimal.Decimal("0.00")


def quantize_amount(value: Any) -> decimal.Decimal:
  """Converts a number to a Decimal rounded half-up to two places."""
  if isinstance(value, float):
    value = repr(value)
  try:
    amount = decimal.Decimal(value)
  except (decimal.InvalidOperation, TypeError) as e:
    raise ValueError(f"Invalid amount: {value!r}") from e
  if not amount.is_finite():
    raise ValueError(f"Invalid amount: {value!r}")
  return amount.quantize(CENT, rounding=decimal.ROUND_HALF_UP)


Amount = Annotated[
    decimal.Decimal,
    BeforeValidator(quantize_amount),
    PlainSerializer(float, return_type=float, when_used="json"),
]


def utcnow() -> datetime.datetime:
  return datetime.datetime.now(datetime.timezone.utc)


class Address(BaseModel):
  """Postal address with optional contact details."""

  model_config = ConfigDict(extra="ignore")

  first_name: Optional[str] = None
  last_name: Optional[str] = None
  email: Optional[str] = None
  phone: Optional[str] = None
  address_1: Optional[str] = None
  address_2: Optional[str] = None
  city: Optional[str] = None
  state: Optional[str] = None
  postcode: Optional[str] = None
  country: Optional[str] = None


class Money(BaseModel):
  value: Amount
  currency: str


class LineItem(BaseModel):
  sku: str
  product_ref: str
  name: str
  quantity: int = Field(ge=1)
  unit_price: Amount
  line_subtotal: Amount
  tax_class: str = ""


class ShippingOption(BaseModel):
  id: str
  label: str
  amount: Money


class _SessionBase(BaseModel):
  """Fields shared by every session status."""

  id: str
  items: List[LineItem]
  currency: str
  shipping_address: Optional[Address] = None
  billing_address: Optional[Address] = None
  shipping_options: Optional[List[ShippingOption]] = None
  selected_shipping_method: Optional[str] = None
  coupon_code: Optional[str] = None
  coupon_discount: Amount = ZERO
  subtotal: Amount = ZERO
  shipping_total: Amount = ZERO
  tax_total: Amount = ZERO
  discount: Amount = ZERO
  total: Amount = ZERO
  created_at: datetime.datetime
  updated_at: datetime.datetime
  expires_at: datetime.datetime

  @model_validator(mode="after")
  def _check_consistency(self):
    if self.shipping_options is not None and self.shipping_address is None:
      raise ValueError("shipping_options require a shipping_address")
    if self.coupon_code is None and self.coupon_discount != ZERO:
      raise ValueError("coupon_discount requires a coupon_code")
    if self.selected_shipping_method is not None and not any(
        o.id == self.selected_shipping_method
        for o in self.shipping_options or []
    ):
      raise ValueError("selected_shipping_method is not an offered option")
    return self

  def to_response(self) -> Dict[str, Any]:
    """Formats the session the way it is returned to agents."""

    def money(value: decimal.Decimal) -> Dict[str, Any]:
      return {"value": float(value), "currency": self.currency}

    response: Dict[str, Any] = {
        "id": self.id,
        "items": [
            {
                "sku": item.sku,
                "name": item.name,
                "quantity": item.quantity,
                "price": money(item.unit_price),
                "subtotal": money(item.line_subtotal),
            }
            for item in self.items
        ],
        "subtotal": money(self.subtotal),
    }
    # Omitted entirely, not emptied, when no destination is known.
    if self.shipping_options is not None:
      response["shipping_options"] = [
          o.model_dump(mode="json") for o in self.shipping_options
      ]
      response["shipping"] = money(self.shipping_total)
    if self.selected_shipping_method is not None:
      response["selected_shipping_method"] = self.selected_shipping_method
    if self.coupon_code is not None:
      response["coupon_code"] = self.coupon_code
      response["discount"] = money(self.discount)
    response["tax"] = money(self.tax_total)
    response["total"] = money(self.total)
    for field in ("shipping_address", "billing_address"):
      address = getattr(self, field)
      if address is not None:
        response[field] = address.model_dump(mode="json", exclude_none=True)
    response["status"] = self.status
    response["created_at"] = self.created_at.isoformat()
    response["updated_at"] = self.updated_at.isoformat()
    response["expires_at"] = self.expires_at.isoformat()
    return response


class ActiveSession(_SessionBase):
  status: Literal["active"] = "active"


class CompletedSession(_SessionBase):
  status: Literal["completed"] = "completed"
  order_ref: str

  def to_response(self) -> Dict[str, Any]:
    response = super().to_response()
    response["order_id"] = self.order_ref
    return response


class CancelledSession(_SessionBase):
  status: Literal["cancelled"] = "cancelled"


class FailedSession(_SessionBase):
  status: Literal["failed"] = "failed"
  # Raw reason kept for audit, never part of the response.
  error: str


CheckoutSession = Annotated[
    Union[ActiveSession, CompletedSession, CancelledSession, FailedSession],
    Field(discriminator="status"),
]

SESSION_ADAPTER = TypeAdapter(CheckoutSession)


# --- Requests ---


class ItemRequest(BaseModel):
  """A requested line item. Checked by the orchestrator, not by FastAPI."""

  model_config = ConfigDict(extra="ignore")

  sku: Optional[str] = None
  quantity: Any = None


class CreateSessionRequest(BaseModel):
  model_config = ConfigDict(extra="ignore")

  items: Optional[List[ItemRequest]] = None
  shipping_address: Optional[Address] = None
  billing_address: Optional[Address] = None


class UpdateSessionRequest(BaseModel):
  """Partial update; only the fields present in the body are applied."""

  model_config = ConfigDict(extra="ignore")

  items: Optional[List[ItemRequest]] = None
  shipping_address: Optional[Address] = None
  billing_address: Optional[Address] = None
  shipping_method: Optional[str] = None
  coupon_code: Optional[str] = None
  remove_coupon: bool = False


class PaymentData(BaseModel):
  model_config = ConfigDict(extra="ignore")

  token: Optional[str] = None
  provider: Optional[str] = None


class Buyer(BaseModel):
  model_config = ConfigDict(extra="ignore")

  email: Optional[str] = None
  phone_number: Optional[str] = None
  phone: Optional[str] = None
  first_name: Optional[str] = None
  last_name: Optional[str] = None


class CompleteSessionRequest(BaseModel):
  model_config = ConfigDict(extra="ignore")

  payment: Optional[PaymentData] = None
  buyer: Optional[Buyer] = None
  billing_address: Optional[Address] = None
  shipping_address: Optional[Address] = None


class RefundRequest(BaseModel):
  amount: Amount = Field(gt=0)
  reason: Optional[str] = None


class OrderUpdateRequest(BaseModel):
  status: Optional[OrderStatus] = None
  refunds: Optional[List[RefundRequest]] = None


# --- Orders, payments and events ---


class Refund(BaseModel):
  id: str
  amount: Amount
  reason: Optional[str] = None


class Order(BaseModel):
  """Minimal order record created when a session is paid."""

  id: str
  checkout_session_id: str
  status: OrderStatus = OrderStatus.PROCESSING
  permalink_url: str
  total: Amount
  currency: str
  refunds: List[Refund] = Field(default_factory=list)
  created_at: datetime.datetime
  updated_at: datetime.datetime

  def summary(self) -> Dict[str, Any]:
    return {
        "id": self.id,
        "status": self.status.value,
        "permalink_url": self.permalink_url,
        "total": {"value": float(self.total), "currency": self.currency},
    }


class PaymentResult(BaseModel):
  status: PaymentStatus
  order_id: str
  redirect_url: Optional[str] = None


class OrderEvent(BaseModel):
  """An order lifecycle transition to be announced to the agent."""

  event_type: WebhookEvent
  order: Order
