import unittest
from datetime import timedelta

from fastapi.testclient import TestClient

from marketplace.app import create_app
from marketplace.db import InMemoryDbClient
from marketplace.dependencies import get_db_client, get_storage_client
from marketplace.security import create_access_token
from marketplace.storage import InMemoryStorageClient

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.storage = InMemoryStorageClient()
        self.app = create_app()
        self.app.dependency_overrides[get_db_client] = lambda: self.db
        self.app.dependency_overrides[get_storage_client] = lambda: self.storage
        self.client = TestClient(self.app)

    def register(self, username="alice", email=None, password="pw-alice"):
        response = self.client.post(
            "/api/auth/register",
            json={
                "username": username,
                "email": email or f"{username}@example.com",
                "password": password,
            },
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def auth(self, token):
        return {"Authorization": f"Bearer {token}"}

    def create_product(self, token, name="Lamp", price="19.99", image=None, **extra):
        data = {"name": name, "price": price, "description": "A desk lamp"}
        data.update(extra)
        files = {"image": image} if image else None
        return self.client.post(
            "/api/products", data=data, files=files, headers=self.auth(token)
        )


class HealthTests(ApiTestCase):
    def test_health(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_unknown_route_uses_error_body(self):
        response = self.client.get("/api/nope")
        self.assertEqual(response.status_code, 404)
        self.assertIn("error", response.json())


class AuthTests(ApiTestCase):
    def test_register_returns_user_and_token(self):
        payload = self.register()
        self.assertEqual(payload["message"], "User registered successfully")
        self.assertEqual(payload["user"]["username"], "alice")
        self.assertEqual(payload["user"]["email"], "alice@example.com")
        self.assertNotIn("password", payload["user"])
        self.assertNotIn("password_hash", payload["user"])
        self.assertTrue(payload["token"])

    def test_register_hashes_password(self):
        self.register(password="plain-text")
        stored = next(iter(self.db.users.values()))
        self.assertNotEqual(stored.password_hash, "plain-text")

    def test_duplicate_email_is_rejected(self):
        self.register(username="alice", email="shared@example.com")
        response = self.client.post(
            "/api/auth/register",
            json={"username": "bob", "email": "shared@example.com", "password": "x"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "User already exists"})
        self.assertEqual(len(self.db.users), 1)

    def test_duplicate_username_is_rejected(self):
        self.register(username="alice")
        response = self.client.post(
            "/api/auth/register",
            json={"username": "alice", "email": "other@example.com", "password": "x"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(len(self.db.users), 1)

    def test_register_validates_fields(self):
        response = self.client.post(
            "/api/auth/register",
            json={"username": "carol", "email": "not-an-email", "password": "x"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("email", response.json()["error"])

        response = self.client.post(
            "/api/auth/register",
            json={"username": "", "email": "carol@example.com", "password": "x"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(len(self.db.users), 0)

    def test_login_token_is_accepted_by_profile(self):
        self.register(password="correct horse")
        response = self.client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "correct horse"},
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["message"], "Login successful")

        profile = self.client.get("/api/user/profile", headers=self.auth(payload["token"]))
        self.assertEqual(profile.status_code, 200)
        self.assertEqual(profile.json()["username"], "alice")
        self.assertEqual(profile.json()["id"], payload["user"]["id"])
        self.assertIn("created_at", profile.json())

    def test_login_with_mixed_case_registration_email(self):
        registered = self.register(email="Alice@Example.COM", password="pw")
        self.assertEqual(registered["user"]["email"], "Alice@example.com")

        for email in ["Alice@Example.COM", "Alice@example.com"]:
            response = self.client.post(
                "/api/auth/login", json={"email": email, "password": "pw"}
            )
            self.assertEqual(response.status_code, 200, email)
            token = response.json()["token"]
            profile = self.client.get("/api/user/profile", headers=self.auth(token))
            self.assertEqual(profile.status_code, 200)
            self.assertEqual(profile.json()["id"], registered["user"]["id"])

    def test_login_rejects_malformed_email(self):
        response = self.client.post(
            "/api/auth/login", json={"email": "not-an-email", "password": "x"}
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("email", response.json()["error"])

    def test_login_rejects_wrong_password(self):
        self.register(password="correct horse")
        for attempt in ["", "correct horse ", "Correct horse", "correct", "x" * 80]:
            response = self.client.post(
                "/api/auth/login",
                json={"email": "alice@example.com", "password": attempt},
            )
            self.assertEqual(response.status_code, 400, attempt)
            self.assertNotIn("token", response.json())

    def test_login_rejects_unknown_email(self):
        response = self.client.post(
            "/api/auth/login",
            json={"email": "ghost@example.com", "password": "x"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid credentials"})


class TokenTests(ApiTestCase):
    def test_missing_token_is_401(self):
        response = self.client.get("/api/user/profile")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Access denied"})

    def test_garbage_token_is_403(self):
        response = self.client.get("/api/user/profile", headers=self.auth("not.a.jwt"))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {"error": "Invalid token"})

    def test_expired_token_is_403(self):
        user = self.register()["user"]
        token = create_access_token(
            user["id"], user["username"], expires_delta=timedelta(seconds=-30)
        )
        response = self.client.get("/api/user/profile", headers=self.auth(token))
        self.assertEqual(response.status_code, 403)

    def test_profile_for_missing_user_is_404(self):
        token = create_access_token(999, "ghost")
        response = self.client.get("/api/user/profile", headers=self.auth(token))
        self.assertEqual(response.status_code, 404)

    def test_create_requires_token(self):
        response = self.client.post("/api/products", data={"name": "x", "price": "1"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.db.products, {})


class ProductTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.alice = self.register("alice")
        self.bob = self.register("bob")

    def test_create_without_image(self):
        response = self.create_product(self.alice["token"])
        self.assertEqual(response.status_code, 201, response.text)
        product = response.json()["product"]
        self.assertEqual(product["name"], "Lamp")
        self.assertEqual(product["price"], "19.99")
        self.assertEqual(product["user_id"], self.alice["user"]["id"])
        self.assertIsNone(product["image_key"])
        self.assertIsNone(product["image_url"])

    def test_price_is_stored_with_two_decimals(self):
        response = self.create_product(self.alice["token"], price="5")
        self.assertEqual(response.json()["product"]["price"], "5.00")

    def test_create_rejects_non_positive_price(self):
        for price in ["0", "-1", "-0.01", "abc", "1.234"]:
            response = self.create_product(self.alice["token"], price=price)
            self.assertEqual(response.status_code, 400, price)
            self.assertIn("price", response.json()["error"])
        self.assertEqual(self.db.products, {})

    def test_create_rejects_blank_name(self):
        response = self.create_product(self.alice["token"], name="   ")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.db.products, {})

    def test_create_with_image_uploads_under_products_prefix(self):
        response = self.create_product(
            self.alice["token"], image=("photo.png", PNG_BYTES, "image/png")
        )
        self.assertEqual(response.status_code, 201)
        key = response.json()["product"]["image_key"]
        self.assertTrue(key.startswith("products/"))
        self.assertTrue(key.endswith("-photo.png"))
        stored = self.storage.stored_objects[key]
        self.assertEqual(stored.data, PNG_BYTES)
        self.assertEqual(stored.content_type, "image/png")

    def test_reads_attach_signed_urls(self):
        with_image = self.create_product(
            self.alice["token"], name="Photo", image=("p.png", PNG_BYTES, "image/png")
        ).json()["product"]
        self.create_product(self.alice["token"], name="Plain")

        listing = self.client.get("/api/products").json()
        by_name = {p["name"]: p for p in listing}
        signed = by_name["Photo"]["signed_image_url"]
        self.assertIn(with_image["image_key"], signed)
        self.assertIn("expires=3600", signed)
        self.assertEqual(
            by_name["Photo"]["image_url"],
            self.storage.object_url(with_image["image_key"]),
        )
        self.assertIsNone(by_name["Plain"]["signed_image_url"])

        single = self.client.get(f"/api/products/{with_image['id']}").json()
        self.assertIn(with_image["image_key"], single["signed_image_url"])

    def test_list_is_newest_first(self):
        ids = [
            self.create_product(self.alice["token"], name=f"p{i}").json()["product"]["id"]
            for i in range(3)
        ]
        listing = self.client.get("/api/products").json()
        self.assertEqual([p["id"] for p in listing], list(reversed(ids)))

    def test_get_missing_product_is_404(self):
        response = self.client.get("/api/products/404")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Product not found"})

    def test_user_products_only_returns_own(self):
        self.create_product(self.alice["token"], name="alice-1")
        self.create_product(self.bob["token"], name="bob-1")
        self.create_product(self.alice["token"], name="alice-2")

        response = self.client.get("/api/user/products", headers=self.auth(self.alice["token"]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual([p["name"] for p in response.json()], ["alice-2", "alice-1"])

    def test_owner_can_update(self):
        product = self.create_product(self.alice["token"]).json()["product"]
        response = self.client.put(
            f"/api/products/{product['id']}",
            data={"name": "Brass lamp", "price": "25.50"},
            headers=self.auth(self.alice["token"]),
        )
        self.assertEqual(response.status_code, 200, response.text)
        updated = response.json()["product"]
        self.assertEqual(updated["name"], "Brass lamp")
        self.assertEqual(updated["price"], "25.50")
        # Fields not re-submitted are overwritten, not preserved.
        self.assertIsNone(updated["description"])

    def test_update_with_new_image_replaces_old_blob(self):
        product = self.create_product(
            self.alice["token"], image=("old.png", b"old", "image/png")
        ).json()["product"]
        old_key = product["image_key"]

        response = self.client.put(
            f"/api/products/{product['id']}",
            data={"name": "Lamp", "price": "19.99"},
            files={"image": ("new.jpg", b"new", "image/jpeg")},
            headers=self.auth(self.alice["token"]),
        )
        self.assertEqual(response.status_code, 200)
        new_key = response.json()["product"]["image_key"]
        self.assertNotEqual(new_key, old_key)
        self.assertNotIn(old_key, self.storage.stored_objects)
        self.assertEqual(self.storage.stored_objects[new_key].data, b"new")

    def test_update_without_image_keeps_existing_image(self):
        product = self.create_product(
            self.alice["token"], image=("old.png", b"old", "image/png")
        ).json()["product"]
        response = self.client.put(
            f"/api/products/{product['id']}",
            data={"name": "Renamed", "price": "1"},
            headers=self.auth(self.alice["token"]),
        )
        self.assertEqual(response.json()["product"]["image_key"], product["image_key"])
        self.assertIn(product["image_key"], self.storage.stored_objects)

    def test_non_owner_cannot_update_or_delete(self):
        product = self.create_product(self.alice["token"]).json()["product"]
        update = self.client.put(
            f"/api/products/{product['id']}",
            data={"name": "Stolen", "price": "1"},
            headers=self.auth(self.bob["token"]),
        )
        self.assertEqual(update.status_code, 403)
        self.assertEqual(update.json(), {"error": "Not authorized to update this product"})

        delete = self.client.delete(
            f"/api/products/{product['id']}", headers=self.auth(self.bob["token"])
        )
        self.assertEqual(delete.status_code, 403)
        self.assertEqual(delete.json(), {"error": "Not authorized to delete this product"})

        unchanged = self.client.get(f"/api/products/{product['id']}").json()
        self.assertEqual(unchanged["name"], "Lamp")

    def test_update_and_delete_missing_product_is_404(self):
        token = self.alice["token"]
        update = self.client.put(
            "/api/products/77", data={"name": "x", "price": "1"}, headers=self.auth(token)
        )
        self.assertEqual(update.status_code, 404)
        delete = self.client.delete("/api/products/77", headers=self.auth(token))
        self.assertEqual(delete.status_code, 404)

    def test_delete_removes_row_and_blob(self):
        product = self.create_product(
            self.alice["token"], image=("p.png", PNG_BYTES, "image/png")
        ).json()["product"]
        response = self.client.delete(
            f"/api/products/{product['id']}", headers=self.auth(self.alice["token"])
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"message": "Product deleted successfully"})
        self.assertEqual(self.storage.stored_objects, {})
        self.assertEqual(self.client.get("/api/products").json(), [])


class EndToEndTests(ApiTestCase):
    def test_owner_lifecycle(self):
        alice = self.register("alice")
        bob = self.register("bob")

        created = self.create_product(alice["token"], name="Chair", price="40")
        self.assertEqual(created.status_code, 201)
        product_id = created.json()["product"]["id"]

        renamed = self.client.put(
            f"/api/products/{product_id}",
            data={"name": "Armchair", "price": "40", "description": "Comfy"},
            headers=self.auth(alice["token"]),
        )
        self.assertEqual(renamed.status_code, 200)
        self.assertEqual(renamed.json()["product"]["name"], "Armchair")

        hijack = self.client.put(
            f"/api/products/{product_id}",
            data={"name": "Mine now", "price": "1"},
            headers=self.auth(bob["token"]),
        )
        self.assertEqual(hijack.status_code, 403)

        deleted = self.client.delete(
            f"/api/products/{product_id}", headers=self.auth(alice["token"])
        )
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.client.get(f"/api/products/{product_id}").status_code, 404)


class FailingDb(InMemoryDbClient):
    def list_products(self, user_id=None):
        raise RuntimeError("connection reset")


class ServerErrorTests(unittest.TestCase):
    def test_unhandled_errors_become_generic_500(self):
        app = create_app()
        db = FailingDb()
        app.dependency_overrides[get_db_client] = lambda: db
        app.dependency_overrides[get_storage_client] = lambda: InMemoryStorageClient()
        client = TestClient(app, raise_server_exceptions=False)

        with self.assertLogs("marketplace.app", level="ERROR") as logs:
            response = client.get("/api/products")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Server error"})
        self.assertNotIn("connection reset", response.text)
        self.assertTrue(any("connection reset" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
