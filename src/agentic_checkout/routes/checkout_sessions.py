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

"""Checkout session routes for the checkout server."""

from typing import Optional

from agentic_checkout import dependencies
from agentic_checkout.models import CompleteSessionRequest
from agentic_checkout.models import CreateSessionRequest
from agentic_checkout.models import UpdateSessionRequest
from agentic_checkout.services.checkout_service import CheckoutService
from agentic_checkout.services.idempotency import IdempotencyGuard
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Request
from fastapi.responses import JSONResponse

router = APIRouter(
    prefix="/checkout_sessions",
    dependencies=[
        Depends(dependencies.authenticate),
        Depends(dependencies.api_version_header),
    ],
)


@router.post(
    "",
    status_code=201,
    operation_id="create_checkout_session",
    dependencies=[Depends(dependencies.rate_limited("create_session"))],
)
async def create_checkout_session(
    request: Request,
    body: CreateSessionRequest = Body(...),
    idempotency_key: Optional[str] = Depends(
        dependencies.idempotency_header
    ),
    guard: IdempotencyGuard = Depends(dependencies.get_idempotency_guard),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> JSONResponse:
  """Create a checkout session."""
  return await dependencies.run_idempotent(
      request,
      guard,
      "create_session",
      idempotency_key,
      lambda: checkout_service.create_session(body),
      status_code=201,
  )


@router.get(
    "/{id}",
    operation_id="get_checkout_session",
    dependencies=[Depends(dependencies.rate_limited("get_session"))],
)
async def get_checkout_session(
    request: Request,
    checkout_id: str = Path(..., alias="id"),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> JSONResponse:
  """Get a checkout session by ID."""
  return dependencies.json_response(
      request, 200, await checkout_service.get_session(checkout_id)
  )


@router.post(
    "/{id}",
    operation_id="update_checkout_session",
    dependencies=[Depends(dependencies.rate_limited("update_session"))],
)
async def update_checkout_session(
    request: Request,
    checkout_id: str = Path(..., alias="id"),
    body: UpdateSessionRequest = Body(...),
    idempotency_key: Optional[str] = Depends(
        dependencies.idempotency_header
    ),
    guard: IdempotencyGuard = Depends(dependencies.get_idempotency_guard),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> JSONResponse:
  """Update a checkout session."""
  return await dependencies.run_idempotent(
      request,
      guard,
      f"update_session:{checkout_id}",
      idempotency_key,
      lambda: checkout_service.update_session(checkout_id, body),
  )


@router.post(
    "/{id}/cancel",
    operation_id="cancel_checkout_session",
    dependencies=[Depends(dependencies.rate_limited("cancel_session"))],
)
async def cancel_checkout_session(
    request: Request,
    checkout_id: str = Path(..., alias="id"),
    idempotency_key: Optional[str] = Depends(
        dependencies.idempotency_header
    ),
    guard: IdempotencyGuard = Depends(dependencies.get_idempotency_guard),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> JSONResponse:
  """Cancel a checkout session."""
  return await dependencies.run_idempotent(
      request,
      guard,
      f"cancel_session:{checkout_id}",
      idempotency_key,
      lambda: checkout_service.cancel_session(checkout_id),
  )


@router.post(
    "/{id}/complete",
    operation_id="complete_checkout_session",
    dependencies=[Depends(dependencies.rate_limited("complete_session"))],
)
async def complete_checkout_session(
    request: Request,
    checkout_id: str = Path(..., alias="id"),
    body: CompleteSessionRequest = Body(...),
    idempotency_key: Optional[str] = Depends(
        dependencies.idempotency_header
    ),
    guard: IdempotencyGuard = Depends(dependencies.get_idempotency_guard),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> JSONResponse:
  """Complete a checkout session by paying for it."""
  return await dependencies.run_idempotent(
      request,
      guard,
      f"complete_session:{checkout_id}",
      idempotency_key,
      lambda: checkout_service.complete_session(checkout_id, body),
  )
