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

"""Tests for the idempotency guard."""

from absl.testing import absltest
from agentic_checkout import db
from agentic_checkout import testing_helpers
from agentic_checkout.exceptions import ConflictError
from agentic_checkout.services.idempotency import IdempotencyGuard
from agentic_checkout.services.idempotency import normalize_params
from sqlalchemy import func
from sqlalchemy import select

PARAMS = {"items": [{"sku": "ROSE-RED", "quantity": 1}]}


class NormalizeParamsTest(absltest.TestCase):

  def test_strips_internal_keys_and_sorts(self):
    params = {
        "b": 1,
        "_wpnonce": "abc",
        "a": {"z": 1, "y": 2, "_locale": "en"},
        "rest_route": "/wc/v3",
    }
    normalized = normalize_params(params)
    self.assertEqual(list(normalized), ["a", "b"])
    self.assertEqual(normalized["a"], {"y": 2, "z": 1})

  def test_lists_keep_their_order(self):
    self.assertEqual(
        normalize_params([{"b": 1, "a": 2}, 3]), [{"a": 2, "b": 1}, 3]
    )


class IdempotencyGuardTest(testing_helpers.DatabaseTestCase):

  def test_without_key_nothing_is_stored(self):

    async def scenario(session):
      guard = IdempotencyGuard(session, self.settings)
      self.assertIsNone(await guard.begin("create_session", None, PARAMS))
      await guard.complete("create_session", None, 201, {"id": "x"})
      result = await session.execute(
          select(func.count()).select_from(db.IdempotencyRecord)
      )
      return result.scalar_one()

    self.assertEqual(self.run_in_session(scenario), 0)

  def test_completed_response_is_replayed(self):

    async def scenario(session):
      guard = IdempotencyGuard(session, self.settings)
      self.assertIsNone(await guard.begin("create_session", "k1", PARAMS))
      await guard.complete("create_session", "k1", 201, {"id": "checkout_1"})
      return await guard.begin("create_session", "k1", PARAMS)

    cached = self.run_in_session(scenario)
    self.assertEqual(cached.status_code, 201)
    self.assertEqual(cached.body, {"id": "checkout_1"})

  def test_replay_ignores_key_order_and_internal_params(self):

    async def scenario(session):
      guard = IdempotencyGuard(session, self.settings)
      await guard.begin("update_session:c1", "k1", {"a": 1, "b": 2})
      await guard.complete("update_session:c1", "k1", 200, {"ok": True})
      return await guard.begin(
          "update_session:c1", "k1", {"b": 2, "a": 1, "_method": "POST"}
      )

    self.assertEqual(self.run_in_session(scenario).body, {"ok": True})

  def test_different_params_conflict(self):

    async def scenario(session):
      guard = IdempotencyGuard(session, self.settings)
      await guard.begin("create_session", "k1", PARAMS)
      await guard.complete("create_session", "k1", 201, {"id": "checkout_1"})
      with self.assertRaises(ConflictError) as cm:
        await guard.begin(
            "create_session",
            "k1",
            {"items": [{"sku": "ROSE-RED", "quantity": 2}]},
        )
      self.assertEqual(cm.exception.code, "idempotency_conflict")
      self.assertEqual(cm.exception.status_code, 409)

    self.run_in_session(scenario)

  def test_duplicate_while_pending_is_rejected(self):

    async def scenario(session):
      guard = IdempotencyGuard(session, self.settings)
      self.assertIsNone(await guard.begin("create_session", "k1", PARAMS))
      with self.assertRaises(ConflictError) as cm:
        await guard.begin("create_session", "k1", PARAMS)
      self.assertEqual(cm.exception.code, "idempotency_in_progress")

    self.run_in_session(scenario)

  def test_abandoned_key_can_be_retried(self):

    async def scenario(session):
      guard = IdempotencyGuard(session, self.settings)
      await guard.begin("complete_session:c1", "k1", PARAMS)
      await guard.abandon("complete_session:c1", "k1")
      return await guard.begin("complete_session:c1", "k1", PARAMS)

    self.assertIsNone(self.run_in_session(scenario))

  def test_keys_are_scoped_by_endpoint(self):

    async def scenario(session):
      guard = IdempotencyGuard(session, self.settings)
      await guard.begin("cancel_session:c1", "k1", {})
      await guard.complete("cancel_session:c1", "k1", 200, {"id": "c1"})
      return await guard.begin("cancel_session:c2", "k1", {})

    self.assertIsNone(self.run_in_session(scenario))

  def test_expired_key_is_reusable(self):
    settings = self.settings.model_copy(update={"idempotency_ttl_seconds": 0})

    async def scenario(session):
      guard = IdempotencyGuard(session, settings)
      await guard.begin("create_session", "k1", PARAMS)
      await guard.complete("create_session", "k1", 201, {"id": "old"})
      return await guard.begin("create_session", "k1", {"other": True})

    self.assertIsNone(self.run_in_session(scenario))


if __name__ == "__main__":
  absltest.main()
