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

"""Custom exceptions for the agentic checkout server.

Every error carries a machine-readable `code`, the HTTP `status_code` it maps
to and an optional `details` dict that is merged into the JSON error body.
"""

from typing import Any, Dict, Optional


class CheckoutError(Exception):
  """Base class for all checkout exceptions."""

  def __init__(
      self,
      message: str,
      code: str = "internal_error",
      status_code: int = 500,
      details: Optional[Dict[str, Any]] = None,
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    self.details = details or {}
    super().__init__(self.message)


class ValidationError(CheckoutError):
  """Raised when the request is invalid (e.g. missing fields, bad coupon)."""

  def __init__(
      self,
      message: str,
      code: str = "invalid_request",
      details: Optional[Dict[str, Any]] = None,
  ):
    super().__init__(message, code=code, status_code=400, details=details)


class OutOfStockError(ValidationError):
  """Raised when an item is unavailable or lacks sufficient inventory."""

  def __init__(
      self,
      message: str,
      code: str = "out_of_stock",
      details: Optional[Dict[str, Any]] = None,
  ):
    super().__init__(message, code=code, details=details)


class AuthError(CheckoutError):
  """Raised when the caller cannot be authenticated."""

  def __init__(
      self,
      message: str,
      code: str,
      status_code: int = 401,
      details: Optional[Dict[str, Any]] = None,
  ):
    super().__init__(
        message, code=code, status_code=status_code, details=details
    )


class NotFoundError(CheckoutError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str, code: str = "resource_not_found"):
    super().__init__(message, code=code, status_code=404)


class InvalidStateError(CheckoutError):
  """Raised when attempting to mutate a session that is no longer active."""

  def __init__(self, message: str, code: str = "session_not_active"):
    super().__init__(message, code=code, status_code=400)


class ConflictError(CheckoutError):
  """Raised when an idempotency key is reused with different parameters."""

  def __init__(self, message: str, code: str = "idempotency_conflict"):
    super().__init__(message, code=code, status_code=409)


class RateLimitedError(CheckoutError):
  """Raised when a client exceeds the request quota of an endpoint."""

  def __init__(self, message: str, limit: int, reset: int):
    super().__init__(
        message,
        code="rate_limit_exceeded",
        status_code=429,
        details={"limit": limit, "remaining": 0, "reset": reset},
    )
    self.limit = limit
    self.reset = reset

  @property
  def headers(self) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(self.limit),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": str(self.reset),
    }


# Technical payment error codes mapped to the message shown to the buyer and
# the HTTP status returned with it.
PAYMENT_ERROR_MESSAGES = {
    "shared_payment_token_used": ("Payment token has already been used", 402),
    "shared_payment_token_expired": ("Payment token has expired", 402),
    "amount_too_large": ("Amount exceeds token limit", 402),
    "currency_mismatch": ("Currency does not match token", 402),
    "payment_declined": (
        "Payment was declined. Please use a different payment method.",
        402,
    ),
    "insufficient_funds": (
        "Insufficient funds. Please use a different payment method.",
        402,
    ),
    "card_expired": (
        "Your card has expired. Please use a different payment method.",
        402,
    ),
    "invalid_token_format": ("Invalid payment token format", 402),
    "payment_failed": ("Payment processing failed. Please try again.", 402),
}

_UNMAPPED_PAYMENT_ERROR = ("Payment processing failed. Please try again.", 500)


class PaymentError(CheckoutError):
  """Raised when payment processing fails.

  `message` holds the raw gateway reason, which is kept for audit only.
  `user_message` is the mapped text that is safe to return to the caller.
  """

  def __init__(self, message: str, code: str = "payment_failed"):
    user_message, status_code = PAYMENT_ERROR_MESSAGES.get(
        code, _UNMAPPED_PAYMENT_ERROR
    )
    super().__init__(message, code=code, status_code=status_code)
    self.raw_message = message
    self.user_message = user_message

  def to_user_error(self) -> CheckoutError:
    """Returns a copy of this error that no longer carries the raw reason."""
    return CheckoutError(
        self.user_message, code=self.code, status_code=self.status_code
    )


class DependencyError(CheckoutError):
  """Raised when an external collaborator (payment, shipping, tax) fails."""

  def __init__(self, message: str, code: str = "dependency_unavailable"):
    super().__init__(message, code=code, status_code=500)
