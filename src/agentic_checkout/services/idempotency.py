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

"""Idempotency guard for mutating checkout requests.

A request carrying an `Idempotency-Key` first reserves the key. The reservation
is an insert-if-absent, so of two concurrent duplicates only one runs the
handler; the other is told the original is still in progress. Once the
handler returns, its status code and body are stored on the reservation and
replayed verbatim for retries with identical parameters.
"""

import hashlib
import json
import logging
import time
from typing import Any, Optional

from agentic_checkout import db
from agentic_checkout.config import Settings
from agentic_checkout.exceptions import ConflictError
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Transport internals that never take part in the comparison.
_INTERNAL_PARAMS = frozenset({"rest_route", "_wpnonce", "_locale", "_method"})


def normalize_params(params: Any) -> Any:
  """Strips transport internals and sorts mapping keys recursively."""
  if isinstance(params, dict):
    return {
        k: normalize_params(params[k])
        for k in sorted(params)
        if k not in _INTERNAL_PARAMS
    }
  if isinstance(params, list):
    return [normalize_params(v) for v in params]
  return params


def _canonical(params: Any) -> str:
  return json.dumps(params, sort_keys=True, separators=(",", ":"))


class CachedResponse(BaseModel):
  status_code: int
  body: Any


class IdempotencyGuard:
  """Deduplicates mutating requests by (endpoint, caller key)."""

  def __init__(self, session: AsyncSession, settings: Settings):
    self.session = session
    self.settings = settings

  @staticmethod
  def make_key(endpoint: str, caller_key: str) -> str:
    return hashlib.sha256(f"{endpoint}:{caller_key}".encode()).hexdigest()

  async def begin(
      self, endpoint: str, caller_key: Optional[str], params: Any
  ) -> Optional[CachedResponse]:
    """Reserves the key or returns the response of the original request.

    Args:
      endpoint: Name of the operation being protected.
      caller_key: The Idempotency-Key header, if any.
      params: The request parameters the key is bound to.

    Returns:
      None when the caller should run the handler (no key, or this call now
      holds the reservation), or the cached response to replay.

    Raises:
      ConflictError: The key was used with different parameters, or the
        original request is still being processed.
    """
    if not caller_key:
      return None

    key = self.make_key(endpoint, caller_key)
    normalized = normalize_params(params)
    now = time.time()

    # Two passes: the record found on a lost insert may expire or be
    # abandoned before it is read back.
    for _ in range(2):
      reserved = await db.reserve_idempotency_record(
          self.session,
          key,
          endpoint,
          normalized,
          now,
          now + self.settings.idempotency_ttl_seconds,
      )
      await self.session.commit()
      if reserved:
        return None

      record = await db.get_idempotency_record(self.session, key, now)
      if record is None:
        continue

      if _canonical(record.request_params) != _canonical(normalized):
        logger.warning(
            "Idempotency key reused with different parameters on %s",
            endpoint,
        )
        raise ConflictError(
            "Idempotency key reused with different parameters"
        )
      if record.response_status is None:
        raise ConflictError(
            "A request with this idempotency key is still being processed",
            code="idempotency_in_progress",
        )
      logger.info("Replaying cached response for %s", endpoint)
      return CachedResponse(
          status_code=record.response_status, body=record.response_body
      )

    raise ConflictError(
        "A request with this idempotency key is still being processed",
        code="idempotency_in_progress",
    )

  async def complete(
      self,
      endpoint: str,
      caller_key: Optional[str],
      status_code: int,
      body: Any,
  ) -> None:
    """Stores the handler response on the reservation."""
    if not caller_key:
      return
    await db.complete_idempotency_record(
        self.session, self.make_key(endpoint, caller_key), status_code, body
    )
    await self.session.commit()

  async def abandon(self, endpoint: str, caller_key: Optional[str]) -> None:
    """Drops the reservation so the request may be retried with the key."""
    if not caller_key:
      return
    # Whatever the failed handler left uncommitted is discarded.
    await self.session.rollback()
    await db.delete_idempotency_record(
        self.session, self.make_key(endpoint, caller_key)
    )
    await self.session.commit()
