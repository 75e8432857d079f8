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

"""Enumerations for the agentic checkout server.

This module defines the standard enums used throughout the server to
represent the state of checkout sessions, orders and webhook deliveries.
"""

import enum


class SessionStatus(str, enum.Enum):
  ACTIVE = "active"
  COMPLETED = "completed"
  CANCELLED = "cancelled"
  FAILED = "failed"


class OrderStatus(str, enum.Enum):
  PENDING = "pending"
  PROCESSING = "processing"
  ON_HOLD = "on_hold"
  COMPLETED = "completed"
  CANCELLED = "cancelled"
  REFUNDED = "refunded"
  FAILED = "failed"


# Order status as reported to the agent in webhook payloads.
PROTOCOL_ORDER_STATUS = {
    OrderStatus.PENDING: "created",
    OrderStatus.PROCESSING: "confirmed",
    OrderStatus.ON_HOLD: "manual_review",
    OrderStatus.COMPLETED: "fulfilled",
    OrderStatus.CANCELLED: "canceled",
    OrderStatus.REFUNDED: "canceled",
    OrderStatus.FAILED: "canceled",
}


class WebhookEvent(str, enum.Enum):
  ORDER_CREATED = "order_created"
  ORDER_UPDATED = "order_updated"


class DeliveryState(str, enum.Enum):
  NEVER_ATTEMPTED = "never_attempted"
  ATTEMPTING = "attempting"
  SENT = "sent"
  FAILED = "failed"


class CouponType(str, enum.Enum):
  PERCENT = "percent"
  FIXED_CART = "fixed_cart"


class PaymentStatus(str, enum.Enum):
  SUCCEEDED = "succeeded"
  REQUIRES_ACTION = "requires_action"
