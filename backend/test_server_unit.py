import os
import time
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import jwt
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.requests import Request

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "smart_exam_test")
os.environ.setdefault("AUTH_JWT_SECRET", "server-test-secret")

from fastapi.testclient import TestClient

import server
from razorpay_service import RazorpayService
from usage_ledger import MongoUsageLedger


def auth_headers(sub="acct-1"):
    token = jwt.encode(
        {"sub": sub, "aud": server.AUTH_JWT_AUDIENCE, "exp": int(time.time()) + 3600},
        server.AUTH_JWT_SECRET,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def make_db():
    db = MagicMock()
    db.subscriptions.find_one = AsyncMock(return_value=None)
    db.subscriptions.insert_one = AsyncMock()
    db.profiles.update_one = AsyncMock()
    db.profiles.find_one = AsyncMock(return_value={"user_id": "acct-1", "plan": "free", "full_name": None})
    db.payment_orders.find_one = AsyncMock(return_value=None)
    db.payment_orders.update_one = AsyncMock()
    db.payment_orders.insert_one = AsyncMock()
    db.saved_mcqs.insert_one = AsyncMock()
    db.saved_papers.insert_one = AsyncMock()
    db.saved_notes.insert_one = AsyncMock()
    return db


class TestServerHelpers(unittest.TestCase):
    def test_add_months_clamps_to_month_end(self):
        start = server.datetime(2026, 1, 31, 12, 0, tzinfo=server.timezone.utc)
        self.assertEqual(server.add_months(start, 1).date().isoformat(), "2026-02-28")
        self.assertEqual(server.add_months(start, 12).date().isoformat(), "2027-01-31")

    def test_purchasable_plans(self):
        self.assertEqual(server.get_purchasable_plan("Monthly").amount, server.PLAN_MONTHLY_AMOUNT_PAISE)
        self.assertEqual(server.get_purchasable_plan("lifetime").duration_months, None)
        for plan_id in ("free", "weekly", None):
            with self.assertRaises(server.HTTPException) as ctx:
                server.get_purchasable_plan(plan_id)
            self.assertEqual(ctx.exception.status_code, 400)

    def test_paper_total_marks(self):
        paper = {"oneMarks": [{}] * 5, "twoMarks": [{}] * 4, "fiveMarks": [{}] * 3}
        self.assertEqual(server.paper_total_marks(paper), 28)
        self.assertEqual(server.paper_total_marks({}), 0)

    def test_cors_headers_follow_configured_origins(self):
        def request_from(origin):
            return Request({"type": "http", "headers": [(b"origin", origin.encode("latin-1"))]})

        with patch.object(server, "CORS_ORIGINS", ["https://app.example"]):
            allowed = server.cors_headers(request_from("https://app.example"))
            foreign = server.cors_headers(request_from("https://evil.example"))
        self.assertEqual(allowed["Access-Control-Allow-Origin"], "https://app.example")
        self.assertNotIn("Access-Control-Allow-Origin", foreign)
        self.assertEqual(foreign["Vary"], "Origin")

        with patch.object(server, "CORS_ORIGINS", ["*"]):
            self.assertEqual(server.cors_headers(request_from("https://any.example"))["Access-Control-Allow-Origin"], "*")


class TestServerEndpoints(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(server.app)
        self.db = make_db()
        self.razorpay = RazorpayService(key_id="rzp_test_key", key_secret="rzp_test_secret")
        patchers = [
            patch.object(server, "db", self.db),
            patch.object(server, "razorpay_service", self.razorpay),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)

    def test_preflight_returns_cors_headers(self):
        response = self.client.options("/api/generate-mcq")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["access-control-allow-origin"], "*")
        self.assertIn("authorization", response.headers["access-control-allow-headers"])

    def test_health(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_generation_requires_json_object_body(self):
        response = self.client.post(
            "/api/generate-mcq",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid request body"})

    def test_generation_validation_error_shape(self):
        response = self.client.post(
            "/api/generate-mcq",
            json={"subject": "s" * 101, "topic": "t", "difficulty": "easy", "count": 1},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Subject must be 100 characters or less"})
        self.assertEqual(response.headers["access-control-allow-origin"], "*")

    def test_generation_route_delegates_to_pipeline(self):
        pipeline = MagicMock()
        pipeline.run = AsyncMock(return_value={"mcqs": []})
        with patch.object(server, "generation_pipeline", pipeline):
            response = self.client.post("/api/generate-mcq", json={"subject": "x"}, headers=auth_headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"mcqs": []})
        endpoint, body, authorization = pipeline.run.await_args[0]
        self.assertIs(endpoint, server.MCQ_ENDPOINT)
        self.assertEqual(body, {"subject": "x"})
        self.assertTrue(authorization.startswith("Bearer "))

    def test_verify_payment_requires_auth(self):
        response = self.client.post("/api/verify-razorpay-payment", json={})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Authentication required"})

    def test_verify_payment_missing_fields(self):
        response = self.client.post(
            "/api/verify-razorpay-payment",
            json={"razorpay_order_id": "order_1", "planId": "monthly"},
            headers=auth_headers(),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Missing payment details"})

    def test_verify_payment_bad_signature_writes_nothing(self):
        response = self.client.post(
            "/api/verify-razorpay-payment",
            json={
                "razorpay_order_id": "order_1",
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": "0" * 64,
                "planId": "monthly",
            },
            headers=auth_headers(),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid payment signature"})
        self.db.subscriptions.insert_one.assert_not_called()
        self.db.profiles.update_one.assert_not_called()

    def test_verify_payment_gateway_not_configured(self):
        with patch.object(server, "razorpay_service", RazorpayService(key_id="", key_secret="")):
            response = self.client.post(
                "/api/verify-razorpay-payment",
                json={
                    "razorpay_order_id": "order_1",
                    "razorpay_payment_id": "pay_1",
                    "razorpay_signature": "abc",
                    "planId": "lifetime",
                },
                headers=auth_headers(),
            )
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Payment gateway not configured"})

    def test_verify_payment_activates_subscription(self):
        signature = self.razorpay.expected_signature("order_1", "pay_1")
        response = self.client.post(
            "/api/verify-razorpay-payment",
            json={
                "razorpay_order_id": "order_1",
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": signature,
                "planId": "monthly",
            },
            headers=auth_headers(),
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Successfully upgraded to monthly plan!")

        subscription = self.db.subscriptions.insert_one.await_args[0][0]
        self.assertEqual(subscription["user_id"], "acct-1")
        self.assertEqual(subscription["plan"], "monthly")
        self.assertEqual(subscription["amount"], server.PLAN_MONTHLY_AMOUNT_PAISE)
        self.assertEqual(subscription["razorpay_payment_id"], "pay_1")
        self.assertEqual(subscription["status"], "active")
        self.assertIsNotNone(subscription["expires_at"])
        profile_update = self.db.profiles.update_one.await_args[0][1]
        self.assertEqual(profile_update["$set"]["plan"], "monthly")

    def test_verify_payment_replay_is_idempotent(self):
        self.db.subscriptions.find_one = AsyncMock(
            return_value={"user_id": "acct-1", "plan": "lifetime", "razorpay_payment_id": "pay_1"}
        )
        signature = self.razorpay.expected_signature("order_1", "pay_1")
        response = self.client.post(
            "/api/verify-razorpay-payment",
            json={
                "razorpay_order_id": "order_1",
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": signature,
                "planId": "lifetime",
            },
            headers=auth_headers(),
        )
        self.assertEqual(response.status_code, 200)
        self.db.subscriptions.insert_one.assert_not_called()
        profile_update = self.db.profiles.update_one.await_args[0][1]
        self.assertEqual(profile_update["$set"]["plan"], "lifetime")

    def verify_payload(self, plan_id="lifetime"):
        return {
            "razorpay_order_id": "order_1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": self.razorpay.expected_signature("order_1", "pay_1"),
            "planId": plan_id,
        }

    def test_verify_payment_retry_repairs_plan_after_failed_update(self):
        subscriptions = {}
        profile = {"plan": "free"}
        profile_calls = []

        async def find_subscription(query, _projection=None):
            return subscriptions.get(query["razorpay_payment_id"])

        async def insert_subscription(doc):
            subscriptions[doc["razorpay_payment_id"]] = dict(doc)

        async def update_profile(_query, update, upsert=False):
            profile_calls.append(update)
            if len(profile_calls) == 1:
                raise PyMongoError("primary stepped down")
            profile.update(update["$set"])

        self.db.subscriptions.find_one = AsyncMock(side_effect=find_subscription)
        self.db.subscriptions.insert_one = AsyncMock(side_effect=insert_subscription)
        self.db.profiles.update_one = AsyncMock(side_effect=update_profile)

        first = self.client.post("/api/verify-razorpay-payment", json=self.verify_payload(), headers=auth_headers())
        self.assertEqual(first.status_code, 500)
        self.assertEqual(first.json(), {"error": "Failed to update plan"})
        self.assertEqual(profile["plan"], "free")

        retry = self.client.post("/api/verify-razorpay-payment", json=self.verify_payload(), headers=auth_headers())
        self.assertEqual(retry.status_code, 200)
        self.assertEqual(profile["plan"], "lifetime")
        self.db.subscriptions.insert_one.assert_awaited_once()
        self.db.payment_orders.update_one.assert_awaited_once()

    def test_verify_payment_replay_for_other_account_is_rejected(self):
        self.db.subscriptions.find_one = AsyncMock(
            return_value={"user_id": "someone-else", "plan": "lifetime", "razorpay_payment_id": "pay_1"}
        )
        response = self.client.post("/api/verify-razorpay-payment", json=self.verify_payload(), headers=auth_headers())
        self.assertEqual(response.status_code, 400)
        self.db.profiles.update_one.assert_not_called()

    def test_verify_payment_lost_insert_race_checks_owner(self):
        self.db.subscriptions.find_one = AsyncMock(
            side_effect=[None, {"user_id": "someone-else", "plan": "lifetime", "razorpay_payment_id": "pay_1"}]
        )
        self.db.subscriptions.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))
        response = self.client.post("/api/verify-razorpay-payment", json=self.verify_payload(), headers=auth_headers())
        self.assertEqual(response.status_code, 400)
        self.db.profiles.update_one.assert_not_called()

    def test_verify_payment_lost_insert_race_same_account_sets_plan(self):
        self.db.subscriptions.find_one = AsyncMock(
            side_effect=[None, {"user_id": "acct-1", "plan": "lifetime", "razorpay_payment_id": "pay_1"}]
        )
        self.db.subscriptions.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))
        response = self.client.post("/api/verify-razorpay-payment", json=self.verify_payload(), headers=auth_headers())
        self.assertEqual(response.status_code, 200)
        profile_update = self.db.profiles.update_one.await_args[0][1]
        self.assertEqual(profile_update["$set"]["plan"], "lifetime")

    def test_verify_payment_rejects_foreign_order(self):
        self.db.payment_orders.find_one = AsyncMock(
            return_value={"order_id": "order_1", "user_id": "someone-else", "plan": "monthly"}
        )
        signature = self.razorpay.expected_signature("order_1", "pay_1")
        response = self.client.post(
            "/api/verify-razorpay-payment",
            json={
                "razorpay_order_id": "order_1",
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": signature,
                "planId": "monthly",
            },
            headers=auth_headers(),
        )
        self.assertEqual(response.status_code, 400)
        self.db.subscriptions.insert_one.assert_not_called()

    def test_create_order_records_pending_order(self):
        order = {
            "success": True,
            "order_id": "order_9",
            "amount": server.PLAN_LIFETIME_AMOUNT_PAISE,
            "currency": "INR",
            "receipt": "rcpt_1",
            "status": "created",
        }
        with patch.object(self.razorpay, "create_order", AsyncMock(return_value=order)):
            response = self.client.post(
                "/api/create-razorpay-order",
                json={"planId": "lifetime"},
                headers=auth_headers(),
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["orderId"], "order_9")
        self.assertEqual(response.json()["keyId"], "rzp_test_key")
        stored = self.db.payment_orders.insert_one.await_args[0][0]
        self.assertEqual(stored["user_id"], "acct-1")
        self.assertEqual(stored["plan"], "lifetime")

    def test_subscription_plans(self):
        response = self.client.get("/api/subscriptions/plans")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([plan["plan_id"] for plan in response.json()], ["free", "monthly", "lifetime"])

    def test_update_profile(self):
        self.db.profiles.find_one = AsyncMock(
            return_value={"user_id": "acct-1", "plan": "free", "full_name": "Asha"}
        )
        response = self.client.put("/api/profile", json={"full_name": " Asha "}, headers=auth_headers())
        self.assertEqual(response.status_code, 200)
        update = self.db.profiles.update_one.await_args_list[-1][0][1]
        self.assertEqual(update["$set"]["full_name"], "Asha")

    def test_usage_snapshot(self):
        ledger_db = MagicMock()
        ledger_db.profiles.find_one = AsyncMock(return_value={"plan": "lifetime"})
        ledger_db.usage_counters.find_one = AsyncMock(return_value={"paper_count": 3})
        with patch.object(server, "usage_ledger", MongoUsageLedger(ledger_db)):
            response = self.client.get("/api/usage", headers=auth_headers())
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["plan"], "lifetime")
        self.assertEqual(body["usage"]["paper"], {"used": 3, "limit": None, "remaining": None})

    def test_save_paper_computes_total_marks(self):
        paper = {"oneMarks": [{"q": 1}] * 5, "twoMarks": [{"q": 2}] * 4, "fiveMarks": [{"q": 5}] * 3}
        response = self.client.post(
            "/api/saved/papers",
            json={"subject": "Chemistry", "institution_name": "City School", "paper": paper},
            headers=auth_headers(),
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["title"], "Chemistry Question Paper")
        self.assertEqual(body["total_marks"], 28)
        self.assertEqual(body["user_id"], "acct-1")

    def test_save_mcqs(self):
        response = self.client.post(
            "/api/saved/mcqs",
            json={
                "subject": "Physics",
                "topic": "Optics",
                "difficulty": "Hard",
                "questions": [{"question": "Q", "options": ["a", "b", "c", "d"], "answer": "a"}],
            },
            headers=auth_headers(),
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["title"], "Physics - Optics")
        self.assertEqual(body["difficulty"], "hard")
        self.assertEqual(body["question_count"], 1)

    def test_save_mcqs_rejects_empty_question_list(self):
        response = self.client.post(
            "/api/saved/mcqs",
            json={"subject": "Physics", "topic": "Optics", "difficulty": "easy", "questions": []},
            headers=auth_headers(),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid request body"})

    def test_list_saved_content(self):
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[{"id": "item-1", "title": "Saved"}])
        collection = MagicMock()
        collection.find.return_value = cursor
        self.db.__getitem__.return_value = collection

        response = self.client.get("/api/saved", headers=auth_headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(set(response.json()), {"mcqs", "papers", "notes"})
        collection.find.assert_called_with({"user_id": "acct-1"}, {"_id": 0})

    def test_delete_saved_item(self):
        collection = MagicMock()
        collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=0))
        self.db.__getitem__.return_value = collection

        response = self.client.delete("/api/saved/notes/missing", headers=auth_headers())
        self.assertEqual(response.status_code, 404)
        collection.delete_one.assert_awaited_with({"id": "missing", "user_id": "acct-1"})

        response = self.client.delete("/api/saved/videos/item-1", headers=auth_headers())
        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
