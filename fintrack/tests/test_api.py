import unittest
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import event

from fintrack.config import Settings, get_settings
from fintrack.currency_conversion import StaticRateProvider
from fintrack.database import build_engine, get_engine, init_db
from fintrack.main import app, get_rate_provider


class ApiTestCase(unittest.TestCase):
    cascade_subscriptions = False

    def setUp(self) -> None:
        self.engine = build_engine("sqlite://")
        init_db(self.engine)
        self.settings = Settings(
            database_url="sqlite://",
            secret_key="test-secret",
            cascade_subscriptions=self.cascade_subscriptions,
            max_receipt_bytes=64,
        )
        app.dependency_overrides[get_engine] = lambda: self.engine
        app.dependency_overrides[get_settings] = lambda: self.settings
        app.dependency_overrides[get_rate_provider] = lambda: StaticRateProvider()
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.engine.dispose()

    def register(self, email: str = "dana@example.com", name: str = "Dana") -> dict:
        response = self.client.post(
            "/api/auth/register",
            json={"name": name, "email": email, "password": "secret123"},
        )
        self.assertEqual(response.status_code, 201, response.text)
        return {"Authorization": f"Bearer {response.json()['token']}"}

    def create_project(self, headers: dict, name: str = "Home") -> int:
        response = self.client.post("/api/projects", json={"name": name}, headers=headers)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["id"]

    def create_transaction(self, headers: dict, project_id: int, **overrides) -> dict:
        payload = {
            "projectId": project_id,
            "type": "expense",
            "name": "Groceries",
            "amount": "40.00",
            "date": "2024-02-03T10:00:00",
        }
        payload.update(overrides)
        response = self.client.post("/api/transactions", json=payload, headers=headers)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def create_subscription(self, headers: dict, project_id: int, **overrides) -> dict:
        payload = {
            "projectId": project_id,
            "name": "Gym",
            "amount": "10.00",
            "startDate": "2024-01-15",
            "frequencyValue": 1,
            "frequencyUnit": "months",
        }
        payload.update(overrides)
        response = self.client.post("/api/subscriptions", json=payload, headers=headers)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()


class AuthApiTests(ApiTestCase):
    def test_health_needs_no_token(self) -> None:
        response = self.client.get("/api/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True})

    def test_register_login_and_me(self) -> None:
        self.register(email="Dana@Example.com")

        login = self.client.post(
            "/api/auth/login",
            json={"email": "dana@example.com", "password": "secret123"},
        )
        self.assertEqual(login.status_code, 200)
        headers = {"Authorization": f"Bearer {login.json()['token']}"}

        me = self.client.get("/api/auth/me", headers=headers)

        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["email"], "dana@example.com")
        self.assertNotIn("hashedPassword", me.json())

    def test_duplicate_email_conflicts(self) -> None:
        self.register()

        response = self.client.post(
            "/api/auth/register",
            json={"name": "Other", "email": "dana@example.com", "password": "secret123"},
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["message"], "Email already exists.")

    def test_wrong_password_is_rejected(self) -> None:
        self.register()

        response = self.client.post(
            "/api/auth/login",
            json={"email": "dana@example.com", "password": "nope-nope"},
        )

        self.assertEqual(response.status_code, 401)

    def test_missing_or_bad_token_is_unauthorized(self) -> None:
        self.assertEqual(self.client.get("/api/projects").status_code, 401)
        response = self.client.get(
            "/api/projects", headers={"Authorization": "Bearer not-a-token"}
        )

        self.assertEqual(response.status_code, 401)
        self.assertIn("message", response.json())


class ProjectApiTests(ApiTestCase):
    def test_missing_field_reports_field_name(self) -> None:
        headers = self.register()

        response = self.client.post("/api/projects", json={}, headers=headers)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Missing required field: name")

    def test_other_users_project_is_not_found(self) -> None:
        owner = self.register()
        intruder = self.register(email="eve@example.com", name="Eve")
        project_id = self.create_project(owner)

        self.assertEqual(
            self.client.get(f"/api/projects/{project_id}", headers=intruder).status_code, 404
        )
        self.assertEqual(
            self.client.put(
                f"/api/projects/{project_id}", json={"name": "Mine"}, headers=intruder
            ).status_code,
            404,
        )
        self.assertEqual(
            self.client.delete(f"/api/projects/{project_id}", headers=intruder).status_code, 404
        )
        self.assertEqual(self.client.get("/api/projects", headers=intruder).json(), [])

    def test_update_project(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)

        response = self.client.put(
            f"/api/projects/{project_id}",
            json={"name": " Travel ", "description": "Trips"},
            headers=headers,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["name"], "Travel")
        self.assertEqual(response.json()["description"], "Trips")

    def test_delete_removes_transactions_but_keeps_subscriptions(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        transaction = self.create_transaction(headers, project_id)
        subscription = self.create_subscription(headers, project_id)

        response = self.client.delete(f"/api/projects/{project_id}", headers=headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["deletedTransactions"], 1)
        self.assertEqual(
            self.client.get(f"/api/transactions/{transaction['id']}", headers=headers).status_code,
            404,
        )
        self.assertEqual(
            self.client.get(
                f"/api/subscriptions/{subscription['id']}", headers=headers
            ).status_code,
            200,
        )


class CascadeProjectApiTests(ApiTestCase):
    cascade_subscriptions = True

    def test_delete_can_cascade_to_subscriptions(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        subscription = self.create_subscription(headers, project_id)

        response = self.client.delete(f"/api/projects/{project_id}", headers=headers)

        self.assertEqual(response.json()["deletedSubscriptions"], 1)
        self.assertEqual(
            self.client.get(
                f"/api/subscriptions/{subscription['id']}", headers=headers
            ).status_code,
            404,
        )


class TransactionApiTests(ApiTestCase):
    def test_create_defaults_currency_and_embeds_label(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        label = self.client.post(
            "/api/labels", json={"name": "Food", "color": "#f59e0b"}, headers=headers
        ).json()

        created = self.create_transaction(headers, project_id, labelId=label["id"])

        self.assertEqual(created["currency"], "ILS")
        self.assertEqual(Decimal(created["amount"]), Decimal("40.00"))
        self.assertEqual(created["label"], {"id": label["id"], "name": "Food", "color": "#f59e0b"})

        listed = self.client.get(f"/api/transactions/project/{project_id}", headers=headers).json()
        self.assertEqual([item["id"] for item in listed], [created["id"]])

    def test_rejects_unknown_project_and_bad_values(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        base = {
            "projectId": project_id,
            "type": "expense",
            "name": "Fuel",
            "amount": "10",
            "date": "2024-02-03T10:00:00",
        }

        unknown = self.client.post(
            "/api/transactions", json={**base, "projectId": 999}, headers=headers
        )
        negative = self.client.post(
            "/api/transactions", json={**base, "amount": "-1"}, headers=headers
        )
        bad_type = self.client.post(
            "/api/transactions", json={**base, "type": "transfer"}, headers=headers
        )
        bad_currency = self.client.post(
            "/api/transactions", json={**base, "currency": "GBP"}, headers=headers
        )

        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(negative.status_code, 400)
        self.assertEqual(bad_type.status_code, 400)
        self.assertEqual(bad_currency.status_code, 400)

    def test_data_url_receipt_is_accepted_and_stored_as_sent(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        receipt = {
            "name": "r.png",
            "type": "image/png",
            "size": 5,
            "data": "data:image/png;base64,aGVsbG8=",
        }

        created = self.create_transaction(headers, project_id, receipts=[receipt])

        self.assertEqual(created["receipts"], [receipt])

    def test_receipts_are_validated(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        receipt = {"name": "r.png", "type": "image/png", "size": 5, "data": "aGVsbG8="}

        created = self.create_transaction(headers, project_id, receipts=[receipt])
        invalid = self.client.post(
            "/api/transactions",
            json={
                "projectId": project_id,
                "type": "expense",
                "name": "Fuel",
                "amount": "10",
                "date": "2024-02-03T10:00:00",
                "receipts": [{**receipt, "data": "not base64!"}],
            },
            headers=headers,
        )
        oversized = self.client.post(
            "/api/transactions",
            json={
                "projectId": project_id,
                "type": "expense",
                "name": "Fuel",
                "amount": "10",
                "date": "2024-02-03T10:00:00",
                "receipts": [{**receipt, "size": 1000}],
            },
            headers=headers,
        )

        self.assertEqual(created["receipts"], [receipt])
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(oversized.status_code, 400)

    def test_partial_update_keeps_other_fields(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        other_project = self.create_project(headers, name="Work")
        created = self.create_transaction(headers, project_id, currency="USD")

        response = self.client.put(
            f"/api/transactions/{created['id']}",
            json={"amount": "55.5", "projectId": other_project},
            headers=headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(Decimal(body["amount"]), Decimal("55.50"))
        self.assertEqual(body["projectId"], other_project)
        self.assertEqual(body["name"], "Groceries")
        self.assertEqual(body["currency"], "USD")

    def test_partial_update_rejects_null_required_field(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        created = self.create_transaction(headers, project_id)

        response = self.client.put(
            f"/api/transactions/{created['id']}", json={"name": None}, headers=headers
        )

        self.assertEqual(response.status_code, 400)

    def test_delete_transaction(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        created = self.create_transaction(headers, project_id)

        first = self.client.delete(f"/api/transactions/{created['id']}", headers=headers)
        second = self.client.delete(f"/api/transactions/{created['id']}", headers=headers)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 404)

    def test_stats_converts_to_requested_currency(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        self.create_transaction(headers, project_id, type="income", amount="100", currency="ILS")
        self.create_transaction(headers, project_id, amount="40", currency="USD")

        converted = self.client.get(
            f"/api/transactions/stats/{project_id}?currency=ILS", headers=headers
        ).json()
        raw = self.client.get(f"/api/transactions/stats/{project_id}", headers=headers).json()

        self.assertEqual(Decimal(converted["income"]), Decimal("100"))
        self.assertEqual(Decimal(converted["expenses"]), Decimal("146"))
        self.assertEqual(Decimal(converted["total"]), Decimal("-46"))
        self.assertEqual(converted["transactionCount"], 2)
        self.assertEqual(converted["sourceCurrencies"], ["ILS", "USD"])
        self.assertEqual(Decimal(raw["expenses"]), Decimal("40"))
        self.assertIsNone(raw["currency"])


class LabelAndSettingsApiTests(ApiTestCase):
    def test_label_init_seeds_defaults_once(self) -> None:
        headers = self.register()

        first = self.client.post("/api/labels/init", headers=headers).json()
        second = self.client.post("/api/labels/init", headers=headers).json()

        self.assertTrue(first["created"])
        self.assertFalse(second["created"])
        self.assertEqual(
            [label["name"] for label in second["labels"]],
            ["Food", "Transport", "Shopping", "Salary", "Other"],
        )

    def test_label_color_defaults_and_validates(self) -> None:
        headers = self.register()

        created = self.client.post("/api/labels", json={"name": "Misc"}, headers=headers)
        invalid = self.client.post(
            "/api/labels", json={"name": "Misc", "color": "red"}, headers=headers
        )

        self.assertEqual(created.json()["color"], "#6366f1")
        self.assertEqual(invalid.status_code, 400)

    def test_setting_upsert_keeps_one_row_per_key(self) -> None:
        headers = self.register()

        self.client.put("/api/settings/displayCurrency", json={"value": "USD"}, headers=headers)
        response = self.client.put(
            "/api/settings/displayCurrency", json={"value": "eur"}, headers=headers
        )

        self.assertEqual(response.json(), {"key": "displayCurrency", "value": "EUR"})
        self.assertEqual(
            self.client.get("/api/settings", headers=headers).json(),
            {"displayCurrency": "EUR"},
        )

    def test_setting_upsert_recovers_from_concurrent_insert(self) -> None:
        headers = self.register()
        self.client.put("/api/settings/theme", json={"value": "light"}, headers=headers)
        state = {"hidden": False}

        def hide_existing_row(conn, cursor, statement, parameters, context, executemany):
            if not state["hidden"] and statement.startswith("UPDATE settings"):
                state["hidden"] = True
                return "UPDATE settings SET value = value WHERE 0", ()
            return statement, parameters

        event.listen(self.engine, "before_cursor_execute", hide_existing_row, retval=True)
        try:
            response = self.client.put(
                "/api/settings/theme", json={"value": "dark"}, headers=headers
            )
        finally:
            event.remove(self.engine, "before_cursor_execute", hide_existing_row)

        self.assertTrue(state["hidden"])
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(
            self.client.get("/api/settings", headers=headers).json(), {"theme": "dark"}
        )

    def test_setting_values_are_validated(self) -> None:
        headers = self.register()

        bad_currency = self.client.put(
            "/api/settings/displayCurrency", json={"value": "XYZ"}, headers=headers
        )
        missing = self.client.put("/api/settings/theme", json={}, headers=headers)

        self.assertEqual(bad_currency.status_code, 400)
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(
            self.client.get("/api/settings/theme", headers=headers).status_code, 404
        )

    def test_settings_init_is_idempotent(self) -> None:
        headers = self.register()
        self.client.put("/api/settings/theme", json={"value": "dark"}, headers=headers)

        response = self.client.post("/api/settings/init", headers=headers).json()
        fresh_headers = self.register(email="new@example.com", name="New")
        fresh = self.client.post("/api/settings/init", headers=fresh_headers).json()

        self.assertFalse(response["created"])
        self.assertEqual(response["settings"], {"theme": "dark"})
        self.assertTrue(fresh["created"])
        self.assertEqual(fresh["settings"], {"displayCurrency": "ILS"})


class SubscriptionApiTests(ApiTestCase):
    def test_missing_payments_and_skips(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        subscription = self.create_subscription(headers, project_id)
        self.create_transaction(
            headers, project_id, amount="10", subscriptionId=subscription["id"]
        )
        url = f"/api/subscriptions/project/{project_id}/missing?on=2024-03-20"

        missing = self.client.get(url, headers=headers).json()

        self.assertEqual([entry["dueDate"] for entry in missing], ["2024-03-15", "2024-01-15"])
        self.assertEqual(missing[0]["draft"]["description"], "Payment for 03/2024")
        self.assertEqual(missing[0]["draft"]["subscriptionId"], subscription["id"])

        skipped = self.client.post(
            f"/api/subscriptions/{subscription['id']}/skip",
            json={"date": "2024-03-15"},
            headers=headers,
        )
        self.assertEqual(skipped.json()["skippedDates"], ["2024-03-15"])
        self.assertEqual(
            [entry["dueDate"] for entry in self.client.get(url, headers=headers).json()],
            ["2024-01-15"],
        )

        self.client.delete(
            f"/api/subscriptions/{subscription['id']}/skip/2024-03-15", headers=headers
        )
        self.assertEqual(len(self.client.get(url, headers=headers).json()), 2)

    def test_partial_update_and_validation(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        subscription = self.create_subscription(headers, project_id)

        updated = self.client.put(
            f"/api/subscriptions/{subscription['id']}",
            json={"isActive": False, "frequencyUnit": "years"},
            headers=headers,
        )
        invalid = self.client.put(
            f"/api/subscriptions/{subscription['id']}",
            json={"frequencyValue": 0},
            headers=headers,
        )

        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertFalse(updated.json()["isActive"])
        self.assertEqual(updated.json()["frequencyUnit"], "years")
        self.assertEqual(updated.json()["name"], "Gym")
        self.assertEqual(invalid.status_code, 400)

    def test_offset_dates_match_on_local_calendar_day(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        subscription = self.create_subscription(headers, project_id, startDate="2024-03-01")
        created = self.create_transaction(
            headers,
            project_id,
            date="2024-03-01T00:30:00+02:00",
            subscriptionId=subscription["id"],
        )
        url = f"/api/subscriptions/project/{project_id}/missing?on=2024-03-20"

        self.assertEqual(created["date"], "2024-02-29T22:30:00")
        self.assertEqual(created["localDate"], "2024-03-01")
        self.assertEqual(self.client.get(url, headers=headers).json(), [])

        moved = self.client.put(
            f"/api/transactions/{created['id']}",
            json={"date": "2024-04-01T00:30:00+02:00"},
            headers=headers,
        )
        self.assertEqual(moved.json()["localDate"], "2024-04-01")
        renamed = self.client.put(
            f"/api/transactions/{created['id']}",
            json={"name": "Gym March"},
            headers=headers,
        )
        self.assertEqual(renamed.json()["localDate"], "2024-04-01")

    def test_list_and_delete_subscription(self) -> None:
        headers = self.register()
        project_id = self.create_project(headers)
        subscription = self.create_subscription(headers, project_id)

        listed = self.client.get(f"/api/subscriptions/project/{project_id}", headers=headers)
        deleted = self.client.delete(f"/api/subscriptions/{subscription['id']}", headers=headers)

        self.assertEqual([item["id"] for item in listed.json()], [subscription["id"]])
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(
            self.client.get(f"/api/subscriptions/project/{project_id}", headers=headers).json(),
            [],
        )


class CurrencyApiTests(ApiTestCase):
    def test_convert_uses_rate_provider(self) -> None:
        headers = self.register()

        response = self.client.get(
            "/api/currency/convert?amount=10&from=usd&to=ILS", headers=headers
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["sourceCurrency"], "USD")
        self.assertEqual(Decimal(body["convertedAmount"]), Decimal("36.5"))

    def test_rates_are_anchored_at_base(self) -> None:
        headers = self.register()

        response = self.client.get("/api/currency/rates/usd", headers=headers)

        self.assertEqual(response.json()["base"], "USD")
        self.assertEqual(Decimal(response.json()["rates"]["ILS"]), Decimal("3.65"))

    def test_dated_conversion_echoes_date(self) -> None:
        headers = self.register()

        dated = self.client.get(
            "/api/currency/convert?amount=10&from=USD&to=EUR&date=2024-01-02", headers=headers
        ).json()
        rates = self.client.get("/api/currency/rates/EUR?date=2024-01-02", headers=headers).json()

        self.assertEqual(dated["date"], "2024-01-02")
        self.assertEqual(Decimal(dated["convertedAmount"]), Decimal("9.2"))
        self.assertEqual(rates["date"], "2024-01-02")

    def test_currency_routes_require_token(self) -> None:
        self.assertEqual(self.client.get("/api/currency/rates/USD").status_code, 401)
