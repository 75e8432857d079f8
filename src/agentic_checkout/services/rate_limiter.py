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

"""Fixed window rate limiting per (endpoint, client)."""

import hashlib
import ipaddress
import logging
import time
from typing import Callable, Mapping, Optional, Sequence

from agentic_checkout import db
from agentic_checkout.config import Settings
from agentic_checkout.exceptions import RateLimitedError
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_IP_HEADERS = ("cf-connecting-ip", "x-real-ip", "x-forwarded-for")


def client_ip(headers: Mapping[str, str], peer: Optional[str]) -> str:
  """Picks the caller IP from proxy headers, then the socket peer."""
  candidate = None
  for header in _IP_HEADERS:
    value = headers.get(header)
    if value:
      candidate = value.split(",")[0].strip()
      break
  if candidate is None:
    candidate = peer
  try:
    return str(ipaddress.ip_address(candidate or ""))
  except ValueError:
    return "0.0.0.0"


def ip_allowed(ip: str, allowlist: Sequence[str]) -> bool:
  """True if `ip` falls in one of the CIDR ranges of `allowlist`."""
  address = ipaddress.ip_address(ip)
  return any(
      address in ipaddress.ip_network(network, strict=False)
      for network in allowlist
  )


def client_identity(
    token: Optional[str], headers: Mapping[str, str], peer: Optional[str]
) -> str:
  """Identifies the caller by bearer token when present, else by IP."""
  if token:
    return "principal_" + hashlib.sha256(token.encode()).hexdigest()[:16]
  ip = client_ip(headers, peer)
  return "ip_" + hashlib.md5(ip.encode()).hexdigest()


class RateLimitStatus(BaseModel):
  limit: int
  remaining: int
  reset: int

  @property
  def headers(self):
    return {
        "X-RateLimit-Limit": str(self.limit),
        "X-RateLimit-Remaining": str(self.remaining),
        "X-RateLimit-Reset": str(self.reset),
    }


class RateLimiter:
  """Counts requests in a window that starts with the first request."""

  def __init__(
      self,
      session: AsyncSession,
      settings: Settings,
      clock: Callable[[], float] = time.time,
  ):
    self.session = session
    self.settings = settings
    self.clock = clock

  async def check(
      self, endpoint: str, client_id: str
  ) -> Optional[RateLimitStatus]:
    """Counts one request against the quota.

    Args:
      endpoint: The rate limited operation.
      client_id: Identity from `client_identity`.

    Returns:
      The quota state after this request, or None if the endpoint is not
      limited.

    Raises:
      RateLimitedError: The quota of the current window is used up.
    """
    limit = self.settings.rate_limit_for(endpoint)
    if limit <= 0:
      return None

    key = f"{endpoint}:{client_id}"
    window = self.settings.rate_limit_window_seconds
    now = self.clock()

    for _ in range(3):
      if await db.increment_rate_limit_counter(self.session, key, limit, now):
        await self.session.commit()
        counter = await db.get_rate_limit_counter(self.session, key, now)
        if counter is None:
          # Swept right after the increment.
          return RateLimitStatus(
              limit=limit, remaining=limit - 1, reset=int(now + window)
          )
        return RateLimitStatus(
            limit=limit,
            remaining=max(0, limit - counter.count),
            reset=int(counter.window_started_at + window),
        )

      if await db.start_rate_limit_window(self.session, key, now, window):
        await self.session.commit()
        return RateLimitStatus(
            limit=limit, remaining=limit - 1, reset=int(now + window)
        )

      counter = await db.get_rate_limit_counter(self.session, key, now)
      await self.session.commit()
      if counter is not None and counter.count >= limit:
        reset = int(counter.window_started_at + window)
        logger.warning(
            "Rate limit exceeded for %s by %s (limit %d)",
            endpoint,
            client_id,
            limit,
        )
        raise RateLimitedError(
            "Rate limit exceeded. Please try again later.",
            limit=limit,
            reset=reset,
        )

    raise RateLimitedError(
        "Rate limit exceeded. Please try again later.",
        limit=limit,
        reset=int(now + window),
    )
