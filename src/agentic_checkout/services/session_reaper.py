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

"""Background cleanup of expired sessions and engine state."""

import asyncio
import logging
import time
from typing import Callable, Dict

from agentic_checkout import db
from agentic_checkout.config import Settings
from agentic_checkout.services.session_store import SessionStore
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


class SessionReaper:
  """Deletes sessions that are expired, stale, abandoned or orphaned."""

  def __init__(
      self,
      session_factory: sessionmaker,
      settings: Settings,
      clock: Callable[[], float] = time.time,
  ):
    self.session_factory = session_factory
    self.settings = settings
    self.clock = clock

  async def run_once(self) -> Dict[str, int]:
    """Runs one sweep and returns how many records each rule removed."""
    now = self.clock()
    limit = self.settings.sweep_batch_size
    counts = {}
    async with self.session_factory() as session:
      store = SessionStore(session)
      candidates = {
          "expired": await store.find_expired(now, limit),
          "stale_terminal": await store.find_stale_terminal(
              now - self.settings.audit_retention_seconds, limit
          ),
          "abandoned": await store.find_abandoned(
              now - self.settings.abandoned_after_seconds, limit
          ),
          "orphaned": await store.find_orphaned(limit),
      }
      deleted = set()
      for reason, ids in candidates.items():
        counts[reason] = 0
        for checkout_id in ids:
          # Already gone, either by another rule or a concurrent request.
          if checkout_id in deleted or not await store.delete(checkout_id):
            continue
          deleted.add(checkout_id)
          counts[reason] += 1
      counts["state_records"] = await db.purge_expired_records(session, now)
      await session.commit()

    logger.info(
        "Session sweep removed %d expired, %d stale terminal, %d abandoned,"
        " %d orphaned sessions and %d state records",
        counts["expired"],
        counts["stale_terminal"],
        counts["abandoned"],
        counts["orphaned"],
        counts["state_records"],
    )
    return counts

  async def run_forever(self, interval: float) -> None:
    """Sweeps every `interval` seconds until cancelled."""
    while True:
      try:
        await self.run_once()
      except asyncio.CancelledError:
        raise
      except Exception:  # pylint: disable=broad-exception-caught
        logger.exception("Session sweep failed")
      await asyncio.sleep(interval)
