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

"""Flags and settings for the checkout server."""

import ipaddress
import os
from typing import Dict, List, Optional

from absl import flags
from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

FLAGS = flags.FLAGS

API_VERSION = "2025-09-29"

DEFAULT_RATE_LIMITS = {
    "create_session": 100,
    "get_session": 200,
    "update_session": 100,
    "complete_session": 50,
    "cancel_session": 50,
    "get_order": 200,
    "update_order": 100,
    "product_feed": 100,
}

# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string("db_path", None, "Path to the SQLite database")
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_string(
      "api_key", None, "Bearer token agents must present (CHECKOUT_API_KEY)"
  )
  flags.DEFINE_string(
      "webhook_url", None, "Order event endpoint (CHECKOUT_WEBHOOK_URL)"
  )
  flags.DEFINE_string(
      "webhook_secret",
      None,
      "HMAC secret for webhook signatures (CHECKOUT_WEBHOOK_SECRET)",
  )
  flags.DEFINE_string("currency", "USD", "ISO currency code of the store")
  flags.DEFINE_boolean(
      "test_mode", False, "Allow plain HTTP from non-local hosts"
  )
  flags.DEFINE_float(
      "sweep_interval",
      12 * 3600,
      "Seconds between session reaper runs, 0 disables the reaper",
  )
  flags.DEFINE_string(
      "public_base_url", None, "Base URL used to build order permalinks"
  )
  flags.DEFINE_list(
      "ip_allowlist",
      None,
      "CIDR ranges allowed to call the API, empty allows any"
      " (CHECKOUT_IP_ALLOWLIST)",
  )
except flags.DuplicateFlagError:
  pass


class Settings(BaseModel):
  """Every tunable of the checkout engine.

  Built from flags by the entry point, or directly by tests, and handed to
  each component at construction.
  """

  db_path: Optional[str] = None
  # Use a fresh connection per session (tests drive the file from several
  # event loops).
  db_null_pool: bool = False
  api_key: str = ""
  test_mode: bool = False
  public_base_url: Optional[str] = None
  currency: str = "USD"
  # CIDR ranges; empty disables the check. Ignored in test mode.
  ip_allowlist: List[str] = Field(default_factory=list)

  session_ttl_seconds: int = 24 * 3600
  audit_retention_seconds: int = 7 * 24 * 3600
  abandoned_after_seconds: int = 2 * 3600

  idempotency_ttl_seconds: int = 24 * 3600

  rate_limit_window_seconds: int = 60
  rate_limits: Dict[str, int] = Field(
      default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
  )
  default_rate_limit: int = 100

  webhook_url: str = ""
  webhook_secret: str = ""
  webhook_max_attempts: int = 3
  webhook_retry_base_delay: float = 5.0
  webhook_retry_window_seconds: int = 3600
  webhook_attempting_ttl_seconds: int = 3600
  webhook_state_ttl_seconds: int = 7 * 24 * 3600
  webhook_timeout_seconds: float = 15.0

  tax_enabled: bool = True
  shipping_tax_enabled: bool = True
  shipping_tax_class: str = "inherit"

  sweep_interval_seconds: float = 12 * 3600
  sweep_batch_size: int = 100

  @field_validator("ip_allowlist")
  @classmethod
  def _check_networks(cls, value: List[str]) -> List[str]:
    for network in value:
      ipaddress.ip_network(network, strict=False)
    return value

  def rate_limit_for(self, endpoint: str) -> int:
    """Returns the per-window quota of an endpoint, 0 meaning unlimited."""
    return self.rate_limits.get(endpoint, self.default_rate_limit)

  @property
  def webhook_configured(self) -> bool:
    return bool(self.webhook_url and self.webhook_secret)

  @classmethod
  def from_flags(cls) -> "Settings":
    """Builds settings from parsed flags, falling back to the environment."""
    return cls(
        db_path=FLAGS.db_path,
        api_key=FLAGS.api_key or os.environ.get("CHECKOUT_API_KEY", ""),
        webhook_url=(
            FLAGS.webhook_url or os.environ.get("CHECKOUT_WEBHOOK_URL", "")
        ),
        webhook_secret=(
            FLAGS.webhook_secret
            or os.environ.get("CHECKOUT_WEBHOOK_SECRET", "")
        ),
        currency=FLAGS.currency,
        test_mode=FLAGS.test_mode,
        sweep_interval_seconds=FLAGS.sweep_interval,
        public_base_url=FLAGS.public_base_url,
        ip_allowlist=(
            FLAGS.ip_allowlist
            or _split(os.environ.get("CHECKOUT_IP_ALLOWLIST", ""))
        ),
    )



def _split(value: str) -> List[str]:
  return [part.strip() for part in value.split(",") if part.strip()]
