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

"""Agentic Checkout Server (Python/FastAPI)."""

import asyncio
import contextlib
import logging
import sys
from typing import Callable, Optional, Sequence

from absl import app as absl_app
from agentic_checkout import config
from agentic_checkout import db
from agentic_checkout.config import Settings
from agentic_checkout.exceptions import CheckoutError
from agentic_checkout.exceptions import RateLimitedError
from agentic_checkout.routes.checkout_sessions import router as checkout_router
from agentic_checkout.routes.orders import router as order_router
from agentic_checkout.routes.products import router as products_router
from agentic_checkout.services.payment_processor import MockPaymentProcessor
from agentic_checkout.services.payment_processor import PaymentProcessor
from agentic_checkout.services.session_reaper import SessionReaper
from agentic_checkout.services.webhook_dispatcher import Sleep
import dotenv
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
import httpx
import uvicorn

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Initializes the database and runs the session reaper in the background."""
  settings: Settings = app.state.settings
  manager: db.DatabaseManager = app.state.db
  # In tests the app may be built without a database path.
  if settings.db_path:
    await manager.init_db(settings.db_path, null_pool=settings.db_null_pool)

  reaper_task = None
  if settings.db_path and settings.sweep_interval_seconds > 0:
    reaper = SessionReaper(manager.session_factory, settings)
    reaper_task = asyncio.create_task(
        reaper.run_forever(settings.sweep_interval_seconds)
    )

  yield

  if reaper_task:
    reaper_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
      await reaper_task
  await manager.close()


async def checkout_exception_handler(request: Request, exc: CheckoutError):
  """Converts checkout exceptions to JSON responses."""
  headers = dict(getattr(request.state, "rate_limit_headers", None) or {})
  if isinstance(exc, RateLimitedError):
    headers.update(exc.headers)
  return JSONResponse(
      status_code=exc.status_code,
      content={"detail": exc.message, "code": exc.code, **exc.details},
      headers=headers or None,
  )


def create_app(
    settings: Settings,
    payment_processor_factory: Optional[
        Callable[..., PaymentProcessor]
    ] = None,
    webhook_transport: Optional[httpx.AsyncBaseTransport] = None,
    webhook_sleep: Sleep = asyncio.sleep,
) -> FastAPI:
  """Builds the application.

  Args:
    settings: Server settings.
    payment_processor_factory: Called with (db session, base url) to build
      the payment collaborator. Defaults to the mock gateway.
    webhook_transport: httpx transport for outgoing webhooks (tests).
    webhook_sleep: Sleep used between webhook retries (tests).

  Returns:
    The FastAPI application.
  """
  app = FastAPI(
      title="Agentic Checkout Service",
      version=config.API_VERSION,
      description="Checkout sessions for conversational shopping agents",
      lifespan=lifespan,
  )
  app.state.settings = settings
  app.state.db = db.DatabaseManager()
  app.state.payment_processor_factory = (
      payment_processor_factory or MockPaymentProcessor
  )
  app.state.webhook_transport = webhook_transport
  app.state.webhook_sleep = webhook_sleep

  app.add_exception_handler(CheckoutError, checkout_exception_handler)

  app.include_router(checkout_router, prefix="/v1")
  app.include_router(order_router, prefix="/v1")
  app.include_router(products_router, prefix="/v1")
  return app


def main(argv: Sequence[str]) -> None:
  """Main entry point for the Agentic Checkout Server."""
  del argv  # Unused.

  if config.FLAGS.db_path is None or config.FLAGS.port is None:
    logger.error("Both --db_path and --port must be provided.")
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  settings = Settings.from_flags()
  if not settings.api_key:
    logger.warning("No API key configured, authenticated calls will fail")
  if not settings.webhook_configured:
    logger.warning("Webhook URL or secret missing, events will not be sent")

  uvicorn.run(create_app(settings), host="0.0.0.0", port=config.FLAGS.port)


def run() -> None:
  logging.basicConfig(level=logging.INFO)
  dotenv.load_dotenv()
  absl_app.run(main)


if __name__ == "__main__":
  run()
