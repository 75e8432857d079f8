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

"""Persistence of checkout sessions keyed by id with a TTL.

The store never commits; callers decide the transaction boundaries. Sessions
whose `expires_at` has passed are invisible to `get` even before the reaper
removes them.
"""

import time
from typing import List, Optional

from agentic_checkout import db
from agentic_checkout.enums import OrderStatus
from agentic_checkout.models import CheckoutSession
from agentic_checkout.models import CompletedSession
from agentic_checkout.models import SESSION_ADAPTER
from sqlalchemy.ext.asyncio import AsyncSession

# Once its order reaches one of these a session has nothing left to serve.
FINISHED_ORDER_STATUSES = (
    OrderStatus.COMPLETED.value,
    OrderStatus.FAILED.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.REFUNDED.value,
)


class SessionStore:
  """Reads and writes checkout sessions."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def get(self, checkout_id: str) -> Optional[CheckoutSession]:
    row = await db.get_checkout_row(self.session, checkout_id)
    if row is None or row.expires_at <= time.time():
      return None
    return SESSION_ADAPTER.validate_python(row.data)

  async def save(self, record: CheckoutSession) -> None:
    """Creates or replaces the stored session."""
    order_id = None
    if isinstance(record, CompletedSession):
      order_id = record.order_ref
    await db.save_checkout(
        self.session,
        record.id,
        record.status,
        record.model_dump(mode="json"),
        created_at=record.created_at.timestamp(),
        updated_at=record.updated_at.timestamp(),
        expires_at=record.expires_at.timestamp(),
        order_id=order_id,
    )

  async def save_claimed(self, record: CheckoutSession, claim: str) -> bool:
    """Saves a session settled under `claim` and releases the claim.

    Returns:
      False if `claim` is no longer held, in which case nothing is written.
    """
    order_id = None
    if isinstance(record, CompletedSession):
      order_id = record.order_ref
    return await db.save_claimed_checkout(
        self.session,
        record.id,
        claim,
        record.status,
        record.model_dump(mode="json"),
        updated_at=record.updated_at.timestamp(),
        expires_at=record.expires_at.timestamp(),
        order_id=order_id,
    )

  async def delete(self, checkout_id: str) -> bool:
    return await db.delete_checkout(self.session, checkout_id)

  async def claim(self, checkout_id: str, token: str) -> bool:
    """Marks an active session as being settled by `token`.

    Returns:
      False if the session is no longer active or someone else holds it.
    """
    return await db.claim_checkout(self.session, checkout_id, token)

  async def release(self, checkout_id: str, token: str) -> None:
    await db.release_checkout_claim(self.session, checkout_id, token)

  async def find_expired(self, now: float, limit: int) -> List[str]:
    return await db.get_expired_checkout_ids(self.session, now, limit)

  async def find_stale_terminal(self, cutoff: float, limit: int) -> List[str]:
    return await db.get_stale_terminal_checkout_ids(
        self.session, cutoff, limit
    )

  async def find_abandoned(self, cutoff: float, limit: int) -> List[str]:
    return await db.get_abandoned_checkout_ids(self.session, cutoff, limit)

  async def find_orphaned(self, limit: int) -> List[str]:
    """Sessions whose order has reached a finished status."""
    return await db.get_orphaned_checkout_ids(
        self.session, FINISHED_ORDER_STATUSES, limit
    )
