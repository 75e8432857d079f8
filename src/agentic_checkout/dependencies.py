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

"""FastAPI dependencies for the checkout server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Bearer token authentication, the HTTPS requirement and the IP allowlist.
- Advisory API-Version negotiation.
- Per-endpoint rate limiting and the X-RateLimit-* headers.
- Idempotent execution of mutating handlers.
- Service instantiation (CheckoutService and its collaborators).
- Database session management.
"""

import hmac
import json
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional

from agentic_checkout import config
from agentic_checkout.config import Settings
from agentic_checkout.exceptions import AuthError
from agentic_checkout.services.catalog_service import CatalogService
from agentic_checkout.services.checkout_service import CheckoutService
from agentic_checkout.services.idempotency import IdempotencyGuard
from agentic_checkout.services.payment_processor import PaymentProcessor
from agentic_checkout.services.pricing_engine import PricingEngine
from agentic_checkout.services.product_feed import ProductFeedService
from agentic_checkout.services.rate_limiter import client_identity
from agentic_checkout.services.rate_limiter import client_ip
from agentic_checkout.services.rate_limiter import ip_allowed
from agentic_checkout.services.rate_limiter import RateLimiter
from agentic_checkout.services.session_store import SessionStore
from agentic_checkout.services.shipping_service import ShippingService
from agentic_checkout.services.tax_service import TaxService
from agentic_checkout.services.webhook_dispatcher import WebhookDispatcher
from fastapi import BackgroundTasks
from fastapi import Depends
from fastapi import Header
from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
_LOCAL_SUFFIXES = (".local", ".test", ".dev")


def get_settings(request: Request) -> Settings:
  return request.app.state.settings


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for a database session."""
  async with request.app.state.db.session_factory() as session:
    yield session


def is_local_host(host: Optional[str]) -> bool:
  host = (host or "").lower().strip("[]")
  return host in _LOCAL_HOSTS or host.endswith(_LOCAL_SUFFIXES)


async def authenticate(
    request: Request,
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> str:
  """Validates the bearer token and returns it."""
  if not settings.api_key:
    raise AuthError(
        "API key not configured",
        code="api_key_not_configured",
        status_code=500,
    )

  scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
  if (
      scheme.lower() != "https"
      and not settings.test_mode
      and not is_local_host(request.url.hostname)
  ):
    raise AuthError(
        "HTTPS is required", code="ssl_required", status_code=403
    )

  if settings.ip_allowlist and not settings.test_mode:
    ip = client_ip(
        request.headers, request.client.host if request.client else None
    )
    if not ip_allowed(ip, settings.ip_allowlist):
      logger.warning("Rejected request from %s, not in the IP allowlist", ip)
      raise AuthError(
          "Request from unauthorized IP address",
          code="ip_not_allowed",
          status_code=403,
          details={"ip": ip},
      )

  if not authorization:
    raise AuthError(
        "Missing Authorization header", code="missing_authorization"
    )
  parts = authorization.split(" ", 1)
  if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
    raise AuthError(
        "Authorization header must be 'Bearer <token>'",
        code="invalid_authorization_format",
    )
  token = parts[1].strip()
  if not hmac.compare_digest(token.encode(), settings.api_key.encode()):
    logger.warning("Rejected request with an invalid API key")
    raise AuthError("Invalid API key", code="invalid_token")

  request.state.principal = token
  return token


async def api_version_header(
    api_version: Optional[str] = Header(None),
) -> Optional[str]:
  """Logs version mismatches. The header never causes a rejection."""
  if api_version and api_version != config.API_VERSION:
    logger.info(
        "Client requested API version %s, serving %s",
        api_version,
        config.API_VERSION,
    )
  return api_version


def rate_limited(endpoint: str) -> Callable[..., Awaitable[None]]:
  """Builds a dependency counting the request against `endpoint`'s quota."""

  async def dependency(
      request: Request,
      session: AsyncSession = Depends(get_db),
      settings: Settings = Depends(get_settings),
  ) -> None:
    client_id = client_identity(
        getattr(request.state, "principal", None),
        request.headers,
        request.client.host if request.client else None,
    )
    status = await RateLimiter(session, settings).check(endpoint, client_id)
    if status is not None:
      request.state.rate_limit_headers = status.headers

  return dependency


async def idempotency_header(
    idempotency_key: Optional[str] = Header(None),
) -> Optional[str]:
  """Extracts the optional Idempotency-Key header."""
  return idempotency_key


def json_response(
    request: Request, status_code: int, body: Any
) -> JSONResponse:
  """Builds a JSON response carrying the rate limit headers, if any."""
  return JSONResponse(
      status_code=status_code,
      content=body,
      headers=getattr(request.state, "rate_limit_headers", None),
  )


async def request_params(request: Request) -> Any:
  """The parameters an idempotency key is bound to.

  The JSON body, or the path and query parameters when the body is empty.
  """
  raw = await request.body()
  if raw:
    try:
      return json.loads(raw)
    except ValueError:
      return raw.decode("utf-8", errors="replace")
  return {**request.path_params, **request.query_params}


async def run_idempotent(
    request: Request,
    guard: IdempotencyGuard,
    endpoint: str,
    idempotency_key: Optional[str],
    handler: Callable[[], Awaitable[Any]],
    status_code: int = 200,
) -> JSONResponse:
  """Runs `handler` once per idempotency key and replays its response."""
  cached = await guard.begin(
      endpoint, idempotency_key, await request_params(request)
  )
  if cached is not None:
    return json_response(request, cached.status_code, cached.body)

  try:
    body = await handler()
  except Exception:
    await guard.abandon(endpoint, idempotency_key)
    raise
  await guard.complete(endpoint, idempotency_key, status_code, body)
  return json_response(request, status_code, body)


def get_idempotency_guard(
    session: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> IdempotencyGuard:
  """Dependency provider for IdempotencyGuard."""
  return IdempotencyGuard(session, settings)


def get_base_url(
    request: Request, settings: Settings = Depends(get_settings)
) -> str:
  return (settings.public_base_url or str(request.base_url)).rstrip("/")


def get_catalog_service(
    session: AsyncSession = Depends(get_db),
) -> CatalogService:
  """Dependency provider for CatalogService."""
  return CatalogService(session)


def get_pricing_engine(
    session: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> PricingEngine:
  """Dependency provider for PricingEngine."""
  return PricingEngine(
      ShippingService(session, settings.currency),
      TaxService(session),
      settings,
  )


def get_payment_processor(
    request: Request,
    session: AsyncSession = Depends(get_db),
    base_url: str = Depends(get_base_url),
) -> PaymentProcessor:
  """Dependency provider for the configured PaymentProcessor."""
  return request.app.state.payment_processor_factory(session, base_url)


def get_webhook_dispatcher(
    request: Request, settings: Settings = Depends(get_settings)
) -> WebhookDispatcher:
  """Dependency provider for WebhookDispatcher."""
  state = request.app.state
  return WebhookDispatcher(
      state.db.session_factory,
      settings,
      transport=state.webhook_transport,
      sleep=state.webhook_sleep,
  )


def get_checkout_service(
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    catalog: CatalogService = Depends(get_catalog_service),
    pricing: PricingEngine = Depends(get_pricing_engine),
    payment_processor: PaymentProcessor = Depends(get_payment_processor),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> CheckoutService:
  """Dependency provider for CheckoutService."""

  def publish_event(event):
    # Delivered after the response has been sent.
    background_tasks.add_task(dispatcher.dispatch, event)

  return CheckoutService(
      session,
      SessionStore(session),
      catalog,
      pricing,
      payment_processor,
      settings,
      publish_event=publish_event,
  )


def get_product_feed_service(
    catalog: CatalogService = Depends(get_catalog_service),
    settings: Settings = Depends(get_settings),
    base_url: str = Depends(get_base_url),
) -> ProductFeedService:
  """Dependency provider for ProductFeedService."""
  return ProductFeedService(catalog, base_url, settings.currency)
