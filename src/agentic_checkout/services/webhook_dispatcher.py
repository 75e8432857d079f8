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

"""Signed delivery of order lifecycle events to the agent.

Each (order, event, target status) triple is delivered at most once. Its
progress is tracked in the `webhook_deliveries` table:

- no record: never attempted;
- `attempting`: a send is in flight. A record older than the attempting TTL
  is considered abandoned and may be taken over;
- `sent`: later calls for the same key are no-ops;
- `failed`: retried by later calls for one hour after the first failure,
  unless the failure is terminal (the receiver answered 429).

Every transition is a compare-and-swap on the record version, so two
dispatchers racing for the same key never both send.
"""

import asyncio
import decimal
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional
import uuid

from agentic_checkout import db
from agentic_checkout.config import Settings
from agentic_checkout.enums import DeliveryState
from agentic_checkout.enums import PROTOCOL_ORDER_STATUS
from agentic_checkout.models import OrderEvent
import httpx
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def build_payload(event: OrderEvent) -> Dict[str, Any]:
  """Builds the webhook body announcing `event`."""
  order = event.order
  return {
      "type": event.event_type.value,
      "data": {
          "type": "order",
          "checkout_session_id": order.checkout_session_id,
          "permalink_url": order.permalink_url,
          "status": PROTOCOL_ORDER_STATUS[order.status],
          "refunds": [
              {
                  "type": "original_payment",
                  "amount": int(
                      (refund.amount * 100).to_integral_value(
                          rounding=decimal.ROUND_HALF_UP
                      )
                  ),
              }
              for refund in order.refunds
          ],
      },
  }


def sign(body: bytes, secret: str) -> str:
  """Hex HMAC-SHA256 of the exact request body."""
  return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def delivery_key(event: OrderEvent) -> str:
  status = PROTOCOL_ORDER_STATUS[event.order.status]
  return f"{event.order.id}:{event.event_type.value}:{status}"


class WebhookDispatcher:
  """Delivers order events with deduplication and bounded retry."""

  def __init__(
      self,
      session_factory: sessionmaker,
      settings: Settings,
      transport: Optional[httpx.AsyncBaseTransport] = None,
      sleep: Sleep = asyncio.sleep,
      clock: Callable[[], float] = time.time,
  ):
    self.session_factory = session_factory
    self.settings = settings
    self.transport = transport
    self.sleep = sleep
    self.clock = clock

  async def dispatch(self, event: OrderEvent) -> Optional[DeliveryState]:
    """Delivers `event` unless it was already sent or is being sent.

    Never raises; failures end up in the delivery record and the logs.

    Returns:
      The resulting state of the delivery key, or None if an unexpected
      error interrupted the dispatch.
    """
    try:
      return await self._dispatch(event)
    except Exception:  # pylint: disable=broad-exception-caught
      logger.exception(
          "Webhook dispatch for order %s crashed", event.order.id
      )
      return None

  async def _dispatch(self, event: OrderEvent) -> DeliveryState:
    key = delivery_key(event)
    now = self.clock()

    if not self.settings.webhook_configured:
      logger.warning("Webhook not configured, not sending %s", key)
      await self._record_not_configured(key, event, now)
      return DeliveryState.FAILED

    async with self.session_factory() as session:
      version = await self._acquire(session, key, event, now)
      await session.commit()
    if version is None:
      return await self._current_state(key)

    body = json.dumps(build_payload(event), separators=(",", ":")).encode()
    headers = {
        "Content-Type": "application/json",
        "Merchant-Signature": sign(body, self.settings.webhook_secret),
        # One id per delivery, shared by its retries.
        "Webhook-ID": str(uuid.uuid4()),
    }

    sent, reason, terminal = await self._send_with_retry(
        event, body, headers
    )

    async with self.session_factory() as session:
      if sent:
        values = {
            "state": DeliveryState.SENT.value,
            "reason": None,
            "updated_at": self.clock(),
        }
      else:
        record = await db.get_webhook_delivery(session, key, self.clock())
        first_failed_at = None
        if record is not None:
          first_failed_at = record.first_failed_at
        values = {
            "state": DeliveryState.FAILED.value,
            "reason": reason,
            "terminal": terminal,
            "first_failed_at": first_failed_at or self.clock(),
            "updated_at": self.clock(),
        }
      if not await db.compare_and_set_webhook_delivery(
          session, key, version, values
      ):
        logger.warning("Delivery record %s changed while sending", key)
      await session.commit()

    if sent:
      logger.info("Webhook %s delivered", key)
      return DeliveryState.SENT
    logger.error("Webhook %s failed: %s", key, reason)
    return DeliveryState.FAILED

  async def _acquire(
      self, session, key: str, event: OrderEvent, now: float
  ) -> Optional[int]:
    """Moves the key to `attempting`.

    Returns:
      The record version this dispatcher now owns, or None if the event must
      not be sent (already sent, in flight elsewhere, given up, lost race).
    """
    record = await db.get_webhook_delivery(session, key, now)
    attempting = {
        "state": DeliveryState.ATTEMPTING.value,
        "updated_at": now,
    }
    if record is None:
      created = await db.insert_webhook_delivery(
          session,
          key,
          dict(
              attempting,
              order_id=event.order.id,
              event_type=event.event_type.value,
              target_status=PROTOCOL_ORDER_STATUS[event.order.status],
              terminal=False,
              expires_at=now + self.settings.webhook_state_ttl_seconds,
          ),
          now,
      )
      if not created:
        logger.info("Lost the race to deliver %s", key)
        return None
      return 1

    if record.state == DeliveryState.SENT.value:
      logger.info("Webhook %s already sent", key)
      return None
    if record.state == DeliveryState.ATTEMPTING.value:
      if now - record.updated_at < self.settings.webhook_attempting_ttl_seconds:
        logger.info("Webhook %s is already being delivered", key)
        return None
      logger.info("Taking over stale delivery of %s", key)
    elif record.state == DeliveryState.FAILED.value:
      if record.terminal:
        logger.info("Webhook %s failed terminally, not retrying", key)
        return None
      if (
          record.first_failed_at is not None
          and now - record.first_failed_at
          > self.settings.webhook_retry_window_seconds
      ):
        logger.info("Retry window of %s has passed, giving up", key)
        return None

    if not await db.compare_and_set_webhook_delivery(
        session, key, record.version, attempting
    ):
      logger.info("Lost the race to deliver %s", key)
      return None
    return record.version + 1

  async def _send_with_retry(
      self, event: OrderEvent, body: bytes, headers: Dict[str, str]
  ):
    """POSTs the body up to `webhook_max_attempts` times.

    Returns:
      (sent, failure reason, whether the failure is terminal).
    """
    max_attempts = self.settings.webhook_max_attempts
    reason = None
    async with httpx.AsyncClient(
        transport=self.transport,
        timeout=self.settings.webhook_timeout_seconds,
    ) as client:
      for attempt in range(1, max_attempts + 1):
        status_code = None
        try:
          response = await client.post(
              self.settings.webhook_url, content=body, headers=headers
          )
          status_code = response.status_code
        except httpx.HTTPError as e:
          reason = f"transport_error: {e}"

        await self._log_attempt(event, headers, attempt, status_code, reason)

        if status_code is not None:
          if 200 <= status_code < 300:
            return True, None, False
          if status_code == 429:
            logger.warning(
                "Webhook receiver throttled %s, not retrying",
                event.order.id,
            )
            return False, "rate_limited", True
          reason = f"http_{status_code}"

        logger.warning(
            "Webhook attempt %d/%d for order %s failed: %s",
            attempt,
            max_attempts,
            event.order.id,
            reason,
        )
        if attempt < max_attempts:
          await self.sleep(
              self.settings.webhook_retry_base_delay * 2 ** (attempt - 1)
          )
    return False, reason, False

  async def _log_attempt(
      self,
      event: OrderEvent,
      headers: Dict[str, str],
      attempt: int,
      status_code: Optional[int],
      error: Optional[str],
  ) -> None:
    async with self.session_factory() as session:
      await db.log_request(
          session,
          method="POST",
          url=self.settings.webhook_url,
          checkout_id=event.order.checkout_session_id,
          payload={
              "webhook_id": headers["Webhook-ID"],
              "event": event.event_type.value,
              "order_id": event.order.id,
              "attempt": attempt,
              "status_code": status_code,
              "error": None if status_code is not None else error,
          },
      )
      await session.commit()

  async def _record_not_configured(
      self, key: str, event: OrderEvent, now: float
  ) -> None:
    values = {
        "state": DeliveryState.FAILED.value,
        "reason": "not_configured",
        "first_failed_at": now,
        "updated_at": now,
    }
    async with self.session_factory() as session:
      record = await db.get_webhook_delivery(session, key, now)
      if record is None:
        await db.insert_webhook_delivery(
            session,
            key,
            dict(
                values,
                order_id=event.order.id,
                event_type=event.event_type.value,
                target_status=PROTOCOL_ORDER_STATUS[event.order.status],
                terminal=False,
                expires_at=now + self.settings.webhook_state_ttl_seconds,
            ),
            now,
        )
      elif record.state != DeliveryState.SENT.value:
        await db.compare_and_set_webhook_delivery(
            session, key, record.version, values
        )
      await session.commit()

  async def _current_state(self, key: str) -> DeliveryState:
    async with self.session_factory() as session:
      record = await db.get_webhook_delivery(session, key, self.clock())
    if record is None:
      return DeliveryState.NEVER_ATTEMPTED
    return DeliveryState(record.state)
