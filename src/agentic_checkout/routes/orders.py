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

"""Order management routes for the checkout server."""

from typing import Optional

from agentic_checkout import dependencies
from agentic_checkout.models import OrderUpdateRequest
from agentic_checkout.services.checkout_service import CheckoutService
from agentic_checkout.services.idempotency import IdempotencyGuard
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Request
from fastapi.responses import JSONResponse

router = APIRouter(
    prefix="/orders",
    dependencies=[
        Depends(dependencies.authenticate),
        Depends(dependencies.api_version_header),
    ],
)


@router.get(
    "/{id}",
    operation_id="get_order",
    dependencies=[Depends(dependencies.rate_limited("get_order"))],
)
async def get_order(
    request: Request,
    order_id: str = Path(..., alias="id"),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> JSONResponse:
  """Get an order by ID."""
  return dependencies.json_response(
      request, 200, await checkout_service.get_order(order_id)
  )


@router.put(
    "/{id}",
    operation_id="update_order",
    dependencies=[Depends(dependencies.rate_limited("update_order"))],
)
async def update_order(
    request: Request,
    order_id: str = Path(..., alias="id"),
    body: OrderUpdateRequest = Body(...),
    idempotency_key: Optional[str] = Depends(
        dependencies.idempotency_header
    ),
    guard: IdempotencyGuard = Depends(dependencies.get_idempotency_guard),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> JSONResponse:
  """Update an order's status or record refunds."""
  return await dependencies.run_idempotent(
      request,
      guard,
      f"update_order:{order_id}",
      idempotency_key,
      lambda: checkout_service.update_order(order_id, body),
  )
