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

"""Public product feed that agents crawl to discover the catalog."""

import csv
import io
import json
from typing import Any, Dict, List, Tuple
from xml.etree import ElementTree

from agentic_checkout.exceptions import ValidationError
from agentic_checkout.models import quantize_amount
from agentic_checkout.services.catalog_service import CatalogProduct
from agentic_checkout.services.catalog_service import CatalogService

FEED_FIELDS = (
    "id",
    "sku",
    "title",
    "description",
    "link",
    "image_link",
    "price",
    "availability",
    "inventory_quantity",
    "enable_search",
    "enable_checkout",
)

_MEDIA_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
    "tsv": "text/tab-separated-values",
    "xml": "application/xml",
}


class ProductFeedService:
  """Renders the catalog as json, csv, tsv or xml."""

  def __init__(self, catalog: CatalogService, base_url: str, currency: str):
    self.catalog = catalog
    self.base_url = base_url.rstrip("/")
    self.currency = currency

  async def generate_feed(self, fmt: str = "json") -> Tuple[str, str]:
    """Returns the rendered feed and its media type.

    Raises:
      ValidationError: `fmt` is not a supported format.
    """
    fmt = (fmt or "json").lower()
    if fmt not in _MEDIA_TYPES:
      raise ValidationError(
          f"Unsupported feed format '{fmt}'",
          code="invalid_format",
          details={"supported": sorted(_MEDIA_TYPES)},
      )
    entries = [self._entry(p) for p in await self.catalog.list_products()]
    if fmt == "json":
      body = json.dumps({"products": entries})
    elif fmt == "xml":
      body = self._to_xml(entries)
    else:
      body = self._to_delimited(entries, "," if fmt == "csv" else "\t")
    return body, _MEDIA_TYPES[fmt]

  def _entry(self, product: CatalogProduct) -> Dict[str, Any]:
    return {
        "id": product.product_ref,
        "sku": product.sku,
        "title": product.name,
        "description": product.description or "",
        "link": f"{self.base_url}/products/{product.product_ref}",
        "image_link": product.image_url or "",
        "price": f"{quantize_amount(product.price)} {self.currency}",
        "availability": "in_stock" if product.in_stock else "out_of_stock",
        "inventory_quantity": product.stock_quantity or 0,
        "enable_search": True,
        "enable_checkout": product.purchasable and product.in_stock,
    }

  def _to_delimited(self, entries: List[Dict[str, Any]], delimiter: str):
    out = io.StringIO()
    writer = csv.DictWriter(
        out, fieldnames=FEED_FIELDS, delimiter=delimiter, lineterminator="\n"
    )
    writer.writeheader()
    for entry in entries:
      writer.writerow(
          {
              k: str(v).lower() if isinstance(v, bool) else v
              for k, v in entry.items()
          }
      )
    return out.getvalue()

  def _to_xml(self, entries: List[Dict[str, Any]]) -> str:
    root = ElementTree.Element("products")
    for entry in entries:
      node = ElementTree.SubElement(root, "product")
      for field in FEED_FIELDS:
        value = entry[field]
        text = str(value)
        if isinstance(value, bool):
          text = text.lower()
        ElementTree.SubElement(node, field).text = text
    body = ElementTree.tostring(root, encoding="utf-8", xml_declaration=True)
    return body.decode("utf-8")
