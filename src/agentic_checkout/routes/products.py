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

"""Public product feed route. No authentication, rate limited by IP."""

from agentic_checkout import dependencies
from agentic_checkout.services.product_feed import ProductFeedService
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from fastapi import Request
from fastapi.responses import Response

router = APIRouter()


@router.get(
    "/products",
    operation_id="get_product_feed",
    dependencies=[Depends(dependencies.rate_limited("product_feed"))],
)
async def get_product_feed(
    request: Request,
    fmt: str = Query("json", alias="format"),
    feed_service: ProductFeedService = Depends(
        dependencies.get_product_feed_service
    ),
) -> Response:
  """Get the product feed as json, csv, tsv or xml."""
  body, media_type = await feed_service.generate_feed(fmt)
  return Response(
      content=body,
      media_type=media_type,
      headers=getattr(request.state, "rate_limit_headers", None),
  )
