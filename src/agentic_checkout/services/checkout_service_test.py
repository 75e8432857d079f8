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

"""Tests for the checkout session lifecycle."""

import datetime
from typing import Any, Dict, Optional

from absl.testing import absltest
from agentic_checkout import db
from agentic_checkout import testing_helpers
from agentic_checkout.enums import WebhookEvent
from agentic_checkout.exceptions import CheckoutError
from agentic_checkout.exceptions import DependencyError
from agentic_checkout.exceptions import InvalidStateError
from agentic_checkout.exceptions import NotFoundError
from agentic_checkout.exceptions import OutOfStockError
from agentic_checkout.exceptions import ValidationError
from agentic_checkout.models import Address
from agentic_checkout.models import Buyer
from agentic_checkout.models import CompleteSessionRequest
from agentic_checkout.models import CreateSessionRequest
from agentic_checkout.models import FailedSession
from agentic_checkout.models import OrderUpdateRequest
from agentic_checkout.models import UpdateSessionRequest
from agentic_checkout.models import utcnow
from agentic_checkout.services.checkout_service import merge_buyer
from agentic_checkout.services.payment_processor import MockPaymentProcessor
from agentic_checkout.services.payment_processor import PaymentProcessor
from sqlalchemy import update

US_ADDRESS = testing_helpers.US_ADDRESS
ROSES = [{"sku": "ROSE-RED", "quantity": 2}]


def _create_req(items=None, **fields) -> CreateSessionRequest:
  return CreateSessionRequest.model_validate(
      dict(items=ROSES if items is None else items, **fields)
  )


def _complete_req(token: Optional[str] = "tok_ok", **fields):
  return CompleteSessionRequest.model_validate(
      dict(payment={"token": token, "provider": "stripe"}, **fields)
  )


def _money(value: float) -> Dict[str, Any]:
  return {"value": value, "currency": "USD"}


class OutOfStockProcessor(PaymentProcessor):

  async def process_payment(self, session, payment_data):
    raise OutOfStockError(
        "Insufficient stock for Red Rose", code="insufficient_stock"
    )


class CrashingProcessor(PaymentProcessor):

  async def process_payment(self, session, payment_data):
    raise RuntimeError("gateway client bug")


class RacingPaymentProcessor(MockPaymentProcessor):
  """Loses the roses to another buyer right before charging."""

  async def process_payment(self, session, payment_data):
    await self.session.execute(
        update(db.Inventory)
        .where(db.Inventory.product_id == "prod_rose")
        .values(quantity=0)
    )
    return await super().process_payment(session, payment_data)


class MergeBuyerTest(absltest.TestCase):

  def test_buyer_fills_contact_fields(self):
    address = Address(first_name="Old", city="Paris", country="FR")
    buyer = Buyer(email="ada@example.com", phone_number="+1555", last_name="L")
    merged = merge_buyer(address, buyer)
    self.assertEqual(merged.email, "ada@example.com")
    self.assertEqual(merged.phone, "+1555")
    self.assertEqual(merged.first_name, "Old")
    self.assertEqual(merged.last_name, "L")
    self.assertEqual(merged.city, "Paris")
    # The caller's address is not modified.
    self.assertIsNone(address.email)

  def test_without_buyer_address_is_kept(self):
    self.assertIsNone(merge_buyer(None, None))
    merged = merge_buyer(None, Buyer(phone="+44"))
    self.assertEqual(merged.phone, "+44")


class CheckoutServiceTest(testing_helpers.DatabaseTestCase):

  def setUp(self):
    super().setUp()
    self.events = []

  def run_service(self, fn, payment_processor=None):
    """Runs `fn(service)` against a fresh session."""

    async def run(session):
      service = self.make_checkout_service(
          session, payment_processor=payment_processor, events=self.events
      )
      return await fn(service)

    return self.run_in_session(run)

  def create(self, items=None, **fields) -> Dict[str, Any]:
    return self.run_service(
        lambda service: service.create_session(_create_req(items, **fields))
    )

  def get(self, checkout_id: str) -> Dict[str, Any]:
    return self.run_service(lambda service: service.get_session(checkout_id))

  def update(self, checkout_id: str, **fields) -> Dict[str, Any]:
    req = UpdateSessionRequest.model_validate(fields)
    return self.run_service(
        lambda service: service.update_session(checkout_id, req)
    )

  def complete(self, checkout_id: str, req=None, payment_processor=None):
    return self.run_service(
        lambda service: service.complete_session(
            checkout_id, req if req is not None else _complete_req()
        ),
        payment_processor=payment_processor,
    )

  def assert_error(self, exc_type, code: str, fn, *args, **kwargs):
    with self.assertRaises(exc_type) as cm:
      fn(*args, **kwargs)
    self.assertEqual(cm.exception.code, code)
    return cm.exception

  # --- create ---

  def test_create_prices_items_from_catalog(self):
    checkout = self.create()
    self.assertTrue(checkout["id"].startswith("checkout_"))
    self.assertEqual(checkout["status"], "active")
    self.assertEqual(
        checkout["items"],
        [
            {
                "sku": "ROSE-RED",
                "name": "Red Rose",
                "quantity": 2,
                "price": _money(10.0),
                "subtotal": _money(20.0),
            }
        ],
    )
    self.assertEqual(checkout["subtotal"], _money(20.0))
    self.assertEqual(checkout["tax"], _money(0.0))
    self.assertEqual(checkout["total"], _money(20.0))

  def test_create_without_address_omits_shipping(self):
    checkout = self.create()
    self.assertNotIn("shipping_options", checkout)
    self.assertNotIn("shipping", checkout)
    self.assertNotIn("selected_shipping_method", checkout)

  def test_create_with_address_offers_shipping_and_tax(self):
    checkout = self.create(shipping_address=US_ADDRESS)
    self.assertEqual(
        [o["id"] for o in checkout["shipping_options"]], ["std-us", "exp-us"]
    )
    self.assertEqual(
        checkout["shipping_options"][0]["amount"], _money(5.0)
    )
    self.assertEqual(checkout["shipping"], _money(5.0))
    # 8.25% of 20.00 is 1.65 and of 5.00 shipping is 0.41.
    self.assertEqual(checkout["tax"], _money(2.06))
    self.assertEqual(checkout["total"], _money(27.06))

  def test_default_shipping_rates_apply_elsewhere(self):
    gb = {"address_1": "1 Strand", "city": "London", "country": "GB"}
    checkout = self.create(shipping_address=gb)
    self.assertEqual(
        [o["id"] for o in checkout["shipping_options"]],
        ["std-default", "exp-default"],
    )
    # 20% of 20.00 and of 9.99 shipping.
    self.assertEqual(checkout["tax"], _money(6.0))
    self.assertEqual(checkout["total"], _money(35.99))

  def test_zero_rate_items_are_not_taxed(self):
    checkout = self.create(
        [{"sku": "GIFT-CARD", "quantity": 1}], shipping_address=US_ADDRESS
    )
    # Only the shipping charge is taxed.
    self.assertEqual(checkout["tax"], _money(0.41))
    self.assertEqual(checkout["total"], _money(55.41))

  def test_duplicate_skus_are_merged(self):
    checkout = self.create(
        [{"sku": "ROSE-RED", "quantity": 1}, {"sku": "ROSE-RED", "quantity": 2}]
    )
    self.assertLen(checkout["items"], 1)
    self.assertEqual(checkout["items"][0]["quantity"], 3)

  def test_unmanaged_stock_is_not_limited(self):
    checkout = self.create([{"sku": "VASE-GLASS", "quantity": 100}])
    self.assertEqual(checkout["total"], _money(2500.0))

  def test_create_rejects_malformed_items(self):
    self.assert_error(ValidationError, "missing_items", self.create, [])
    for item in ({"quantity": 1}, {"sku": " ", "quantity": 1}):
      with self.subTest(item=item):
        self.assert_error(ValidationError, "missing_sku", self.create, [item])
    for quantity in (0, -1, "2", 1.5, True, None):
      with self.subTest(quantity=quantity):
        self.assert_error(
            ValidationError,
            "invalid_quantity",
            self.create,
            [{"sku": "ROSE-RED", "quantity": quantity}],
        )

  def test_create_rejects_unsellable_products(self):
    cases = [
        ("NOPE", "product_not_found"),
        ("ORCHID-PURPLE", "product_not_purchasable"),
        ("SUNFLOWER", "out_of_stock"),
        ("BOUQUET-SPRING", "out_of_stock"),
    ]
    for sku, code in cases:
      with self.subTest(sku=sku):
        error = self.assert_error(
            ValidationError,
            code,
            self.create,
            [{"sku": sku, "quantity": 1}],
        )
        self.assertEqual(error.details["sku"], sku)

  def test_insufficient_stock_reports_available(self):
    error = self.assert_error(
        OutOfStockError,
        "insufficient_stock",
        self.create,
        [{"sku": "ROSE-RED", "quantity": 6}],
    )
    self.assertEqual(error.details, {"sku": "ROSE-RED", "available": 5})
    self.assertEqual(error.status_code, 400)

  # --- get ---

  def test_get_returns_stored_session(self):
    checkout = self.create()
    self.assertEqual(self.get(checkout["id"]), checkout)

  def test_get_unknown_session(self):
    self.assert_error(
        NotFoundError, "session_not_found", self.get, "checkout_missing"
    )

  def test_expired_session_is_not_found(self):
    checkout = self.create()

    async def expire(service):
      record = await service.store.get(checkout["id"])
      await service.store.save(
          record.model_copy(
              update={"expires_at": utcnow() - datetime.timedelta(seconds=1)}
          )
      )
      await service.session.commit()

    self.run_service(expire)
    self.assert_error(
        NotFoundError, "session_not_found", self.get, checkout["id"]
    )

  # --- update ---

  def test_partial_update_keeps_other_fields(self):
    checkout = self.create()
    updated = self.update(checkout["id"], shipping_address=US_ADDRESS)
    self.assertEqual(updated["items"], checkout["items"])
    self.assertEqual(updated["shipping"], _money(5.0))
    self.assertEqual(updated["total"], _money(27.06))
    self.assertEqual(updated["shipping_address"]["city"], "San Francisco")

  def test_update_refreshes_expiry(self):
    checkout = self.create()
    updated = self.update(checkout["id"], billing_address=US_ADDRESS)
    self.assertGreaterEqual(
        datetime.datetime.fromisoformat(updated["expires_at"]),
        datetime.datetime.fromisoformat(checkout["expires_at"]),
    )
    self.assertEqual(updated["created_at"], checkout["created_at"])

  def test_update_items_recomputes(self):
    checkout = self.create(shipping_address=US_ADDRESS)
    updated = self.update(
        checkout["id"], items=[{"sku": "TULIP-WHITE", "quantity": 1}]
    )
    self.assertEqual([i["sku"] for i in updated["items"]], ["TULIP-WHITE"])
    self.assertEqual(updated["subtotal"], _money(8.0))
    # 0.66 on the tulip, 0.41 on shipping.
    self.assertEqual(updated["total"], _money(14.07))

  def test_update_validates_items(self):
    checkout = self.create()
    self.assert_error(
        OutOfStockError,
        "insufficient_stock",
        self.update,
        checkout["id"],
        items=[{"sku": "TULIP-WHITE", "quantity": 3}],
    )
    self.assertEqual(self.get(checkout["id"])["items"], checkout["items"])

  def test_select_shipping_method(self):
    checkout = self.create(shipping_address=US_ADDRESS)
    updated = self.update(checkout["id"], shipping_method="exp-us")
    self.assertEqual(updated["selected_shipping_method"], "exp-us")
    self.assertEqual(updated["shipping"], _money(15.0))

  def test_unknown_shipping_method_is_rejected(self):
    checkout = self.create(shipping_address=US_ADDRESS)
    self.assert_error(
        ValidationError,
        "invalid_shipping_method",
        self.update,
        checkout["id"],
        shipping_method="teleport",
    )

  def test_shipping_method_without_address_is_rejected(self):
    checkout = self.create()
    self.assert_error(
        ValidationError,
        "invalid_shipping_method",
        self.update,
        checkout["id"],
        shipping_method="std-us",
    )

  def test_method_dropped_when_destination_changes(self):
    checkout = self.create(shipping_address=US_ADDRESS)
    self.update(checkout["id"], shipping_method="exp-us")
    updated = self.update(
        checkout["id"], shipping_address={"city": "London", "country": "GB"}
    )
    self.assertNotIn("selected_shipping_method", updated)
    self.assertEqual(updated["shipping"], _money(9.99))

  def test_apply_percent_coupon(self):
    checkout = self.create()
    updated = self.update(checkout["id"], coupon_code="SAVE10")
    self.assertEqual(updated["coupon_code"], "save10")
    self.assertEqual(updated["discount"], _money(2.0))
    self.assertEqual(updated["total"], _money(18.0))

  def test_coupon_follows_item_changes(self):
    checkout = self.create()
    self.update(checkout["id"], coupon_code="save10")
    updated = self.update(
        checkout["id"], items=[{"sku": "ROSE-RED", "quantity": 5}]
    )
    self.assertEqual(updated["coupon_code"], "save10")
    self.assertEqual(updated["discount"], _money(5.0))
    self.assertEqual(updated["total"], _money(45.0))

  def test_fixed_coupon_never_makes_total_negative(self):
    checkout = self.create()
    updated = self.update(checkout["id"], coupon_code="fixed100")
    self.assertEqual(updated["discount"], _money(20.0))
    self.assertEqual(updated["total"], _money(0.0))

  def test_invalid_and_expired_coupons_are_rejected(self):
    checkout = self.create()
    for code in ("bogus", "expired20"):
      with self.subTest(code=code):
        self.assert_error(
            ValidationError,
            "invalid_coupon",
            self.update,
            checkout["id"],
            coupon_code=code,
        )

  def test_remove_coupon(self):
    checkout = self.create()
    self.update(checkout["id"], coupon_code="save10")
    updated = self.update(checkout["id"], remove_coupon=True)
    self.assertNotIn("coupon_code", updated)
    self.assertNotIn("discount", updated)
    self.assertEqual(updated["total"], _money(20.0))

  def test_coupon_withdrawn_from_catalog_is_dropped(self):
    checkout = self.create()
    self.update(checkout["id"], coupon_code="save10")

    async def withdraw(service):
      coupon = await service.session.get(db.Coupon, "save10")
      coupon.expires_at = 1.0
      await service.session.commit()

    self.run_service(withdraw)
    updated = self.update(checkout["id"], billing_address=US_ADDRESS)
    self.assertNotIn("coupon_code", updated)
    self.assertEqual(updated["total"], _money(21.65))

  # --- cancel ---

  def test_cancel_removes_session(self):
    checkout = self.create()
    result = self.run_service(
        lambda service: service.cancel_session(checkout["id"])
    )
    self.assertEqual(
        result,
        {
            "id": checkout["id"],
            "status": "cancelled",
            "message": "Checkout session cancelled",
        },
    )
    self.assert_error(
        NotFoundError, "session_not_found", self.get, checkout["id"]
    )
    self.assert_error(
        NotFoundError,
        "session_not_found",
        self.run_service,
        lambda service: service.cancel_session(checkout["id"]),
    )

  # --- complete ---

  def test_complete_creates_order(self):
    checkout = self.create()
    result = self.complete(checkout["id"])

    self.assertEqual(result["status"], "completed")
    order = result["order"]
    self.assertEqual(result["order_id"], order["id"])
    self.assertEqual(order["status"], "processing")
    self.assertEqual(
        order["permalink_url"],
        f"{testing_helpers.BASE_URL}/orders/{order['id']}",
    )
    self.assertEqual(order["total"], _money(20.0))
    self.assertEqual(self.get_inventory("prod_rose"), 3)

    stored = self.get(checkout["id"])
    self.assertEqual(stored["status"], "completed")
    self.assertEqual(stored["order_id"], order["id"])

    self.assertLen(self.events, 1)
    self.assertEqual(self.events[0].event_type, WebhookEvent.ORDER_CREATED)
    self.assertEqual(self.events[0].order.id, order["id"])

  def test_complete_merges_buyer_and_addresses(self):
    checkout = self.create()
    req = _complete_req(
        shipping_address=US_ADDRESS,
        buyer={"email": "ada@example.com", "first_name": "Ada"},
    )
    result = self.complete(checkout["id"], req)
    self.assertEqual(result["billing_address"]["email"], "ada@example.com")
    self.assertEqual(result["shipping"], _money(5.0))
    self.assertEqual(result["order"]["total"], _money(27.06))

  def test_complete_keeps_coupon(self):
    checkout = self.create()
    self.update(checkout["id"], coupon_code="save10")
    result = self.complete(
        checkout["id"], _complete_req(billing_address=US_ADDRESS)
    )
    # 20.00 + 1.65 tax - 2.00 discount.
    self.assertEqual(result["order"]["total"], _money(19.65))

  def test_complete_requires_payment_token(self):
    checkout = self.create()
    requests = [
        _complete_req(None),
        _complete_req("  "),
        CompleteSessionRequest(),
    ]
    for req in requests:
      with self.subTest(req=req):
        self.assert_error(
            ValidationError,
            "missing_payment_token",
            self.complete,
            checkout["id"],
            req,
        )
    self.assertEqual(self.get(checkout["id"])["status"], "active")

  def test_completed_session_cannot_change(self):
    checkout = self.create()
    self.complete(checkout["id"])
    self.assert_error(
        InvalidStateError, "session_not_active", self.complete, checkout["id"]
    )
    self.assert_error(
        InvalidStateError,
        "session_not_active",
        self.update,
        checkout["id"],
        coupon_code="save10",
    )
    self.assert_error(
        InvalidStateError,
        "session_not_active",
        self.run_service,
        lambda service: service.cancel_session(checkout["id"]),
    )
    self.assertEqual(self.get_inventory("prod_rose"), 3)

  def test_stock_sold_elsewhere_fails_session(self):
    checkout = self.create()
    self.set_inventory("prod_rose", 1)
    error = self.assert_error(
        OutOfStockError, "insufficient_stock", self.complete, checkout["id"]
    )
    self.assertEqual(error.details["available"], 1)
    self.assertEqual(self.get(checkout["id"])["status"], "failed")
    self.assertEqual(self.get_inventory("prod_rose"), 1)
    self.assertEmpty(self.events)

  def test_stock_race_during_payment_fails_session(self):
    checkout = self.create()

    async def complete(service):
      service.payment_processor = RacingPaymentProcessor(
          service.session, testing_helpers.BASE_URL
      )
      return await service.complete_session(checkout["id"], _complete_req())

    self.assert_error(
        OutOfStockError, "insufficient_stock", self.run_service, complete
    )
    # The racing update was rolled back with the failed payment.
    self.assertEqual(self.get_inventory("prod_rose"), 5)
    self.assertEqual(self.get(checkout["id"])["status"], "failed")

  def test_processor_stock_error_fails_session(self):
    checkout = self.create()
    self.assert_error(
        OutOfStockError,
        "insufficient_stock",
        self.complete,
        checkout["id"],
        payment_processor=OutOfStockProcessor(),
    )
    self.assertEqual(self.get(checkout["id"])["status"], "failed")

  def test_declined_payment_hides_gateway_reason(self):
    checkout = self.create()
    error = self.assert_error(
        CheckoutError,
        "payment_declined",
        self.complete,
        checkout["id"],
        _complete_req("fail_token"),
    )
    self.assertEqual(error.status_code, 402)
    self.assertEqual(
        error.message,
        "Payment was declined. Please use a different payment method.",
    )
    self.assertEqual(self.get_inventory("prod_rose"), 5)

    async def stored(service):
      return await service.store.get(checkout["id"])

    record = self.run_service(stored)
    self.assertEqual(record.status, "failed")
    self.assertEqual(record.error, "payment_declined: Card declined by issuer")
    self.assertNotIn("error", self.get(checkout["id"]))

  def test_gateway_outage_fails_session(self):
    checkout = self.create()
    error = self.assert_error(
        DependencyError,
        "dependency_unavailable",
        self.complete,
        checkout["id"],
        _complete_req("unavailable_token"),
    )
    self.assertEqual(error.status_code, 500)
    self.assertEqual(self.get(checkout["id"])["status"], "failed")

  def test_authentication_required_keeps_session_active(self):
    checkout = self.create()
    result = self.complete(checkout["id"], _complete_req("3ds_token"))
    self.assertEqual(result["status"], "requires_action")
    self.assertEqual(
        result["redirect_url"],
        f"https://3ds.payments.example/authenticate/{result['order_id']}",
    )
    self.assertEqual(self.get(checkout["id"])["status"], "active")
    self.assertEmpty(self.events)

    # The claim was released, so the session can still be paid.
    self.assertEqual(self.complete(checkout["id"])["status"], "completed")

  def test_claimed_session_is_locked(self):
    checkout = self.create()
    self.claim(checkout["id"])
    self.assert_error(
        InvalidStateError, "session_locked", self.complete, checkout["id"]
    )
    self.assertEqual(self.get_inventory("prod_rose"), 5)

  def claim(self, checkout_id: str, token: str = "other") -> None:

    async def claim(service):
      self.assertTrue(await service.store.claim(checkout_id, token))
      await service.session.commit()

    self.run_service(claim)

  def claim_holder(self, checkout_id: str):
    row = self.run_in_session(
        lambda session: db.get_checkout_row(session, checkout_id)
    )
    return row.claim

  def test_stock_drop_does_not_fail_a_session_claimed_elsewhere(self):
    checkout = self.create()
    self.claim(checkout["id"])
    self.set_inventory("prod_rose", 1)
    self.assert_error(
        InvalidStateError, "session_locked", self.complete, checkout["id"]
    )
    self.assertEqual(self.get(checkout["id"])["status"], "active")
    self.assertEqual(self.claim_holder(checkout["id"]), "other")

  def test_stock_failure_releases_the_claim(self):
    checkout = self.create()
    self.set_inventory("prod_rose", 1)
    self.assert_error(
        OutOfStockError, "insufficient_stock", self.complete, checkout["id"]
    )
    self.assertEqual(self.get(checkout["id"])["status"], "failed")
    self.assertIsNone(self.claim_holder(checkout["id"]))

  def test_unexpected_error_releases_the_claim(self):
    checkout = self.create()
    with self.assertRaises(RuntimeError):
      self.complete(checkout["id"], payment_processor=CrashingProcessor())
    self.assertEqual(self.get(checkout["id"])["status"], "active")
    self.assertIsNone(self.claim_holder(checkout["id"]))
    self.assertEqual(self.complete(checkout["id"])["status"], "completed")

  def test_outcome_is_not_saved_without_the_claim(self):
    checkout = self.create()
    self.claim(checkout["id"])

    async def save_failed(service):
      record = await service.store.get(checkout["id"])
      failed = FailedSession.model_validate(
          {**record.model_dump(exclude={"status"}), "error": "late"}
      )
      saved = await service.store.save_claimed(failed, "mine")
      await service.session.commit()
      return saved

    self.assertFalse(self.run_service(save_failed))
    self.assertEqual(self.get(checkout["id"])["status"], "active")


  # --- orders ---

  def _completed_order(self) -> str:
    checkout = self.create()
    order_id = self.complete(checkout["id"])["order_id"]
    self.events.clear()
    return order_id

  def update_order(self, order_id: str, **fields) -> Dict[str, Any]:
    req = OrderUpdateRequest.model_validate(fields)
    return self.run_service(
        lambda service: service.update_order(order_id, req)
    )

  def test_get_order(self):
    order_id = self._completed_order()
    order = self.run_service(lambda service: service.get_order(order_id))
    self.assertEqual(order["id"], order_id)
    self.assertEqual(order["total"], 20.0)
    self.assertEqual(order["refunds"], [])
    self.assert_error(
        NotFoundError,
        "order_not_found",
        self.run_service,
        lambda service: service.get_order("order_missing"),
    )

  def test_status_change_publishes_update(self):
    order_id = self._completed_order()
    order = self.update_order(order_id, status="completed")
    self.assertEqual(order["status"], "completed")
    self.assertLen(self.events, 1)
    self.assertEqual(self.events[0].event_type, WebhookEvent.ORDER_UPDATED)

  def test_unchanged_order_publishes_nothing(self):
    order_id = self._completed_order()
    self.update_order(order_id, status="processing")
    self.assertEmpty(self.events)

  def test_refunds_are_recorded(self):
    order_id = self._completed_order()
    order = self.update_order(
        order_id, status="refunded", refunds=[{"amount": 5, "reason": "late"}]
    )
    self.assertLen(order["refunds"], 1)
    self.assertEqual(order["refunds"][0]["amount"], 5.0)
    self.assertEqual(order["refunds"][0]["reason"], "late")
    self.assertLen(self.events, 1)

    self.assert_error(
        ValidationError,
        "invalid_refund",
        self.update_order,
        order_id,
        refunds=[{"amount": 15.01}],
    )


if __name__ == "__main__":
  absltest.main()
