"""API integration tests."""

import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from budgetsmart.api import app, get_background_session_factory, get_session, get_uploads_dir
from budgetsmart.ingestion import IngestionError
from budgetsmart.models import Item, Seller, get_engine, get_session_factory, init_db
from budgetsmart.repositories import CatalogRepository


STORE_HTML = """
<div class="product"><h3>Laptop Pro</h3><span class="price">$1,450.00</span></div>
<div class="product"><h3>Wireless Mouse</h3><span class="price">$25</span></div>
"""


class TestAPI(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp())
        self.uploads_dir = self.tmp_dir / "uploads"
        db_path = self.tmp_dir / "api.db"

        config = {
            "storage": {
                "default_backend": "sqlite",
                "sqlite": {"database_path": str(db_path)},
            }
        }
        self.engine = get_engine(config, "sqlite")
        init_db(self.engine)
        Session = get_session_factory(self.engine)
        self.session = Session()

        def override_session():
            test_session = Session()
            try:
                yield test_session
            finally:
                test_session.close()

        app.dependency_overrides[get_session] = override_session
        app.dependency_overrides[get_background_session_factory] = lambda: Session
        app.dependency_overrides[get_uploads_dir] = lambda: self.uploads_dir
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        self.session.close()
        self.engine.dispose()
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def _seed_laptops(self):
        repository = CatalogRepository(self.session)
        seller_a = repository.find_or_create_seller("Seller A", "https://a.example")
        seller_b = repository.find_or_create_seller("Seller B", "https://b.example")
        repository.insert_item(seller_a, "Laptop", 150000)
        repository.insert_item(seller_b, "Laptop", 140000)
        repository.insert_item(seller_a, "Mouse", 5000)

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_manual_item(self):
        response = self.client.post(
            "/api/seller",
            data={"sellerName": "Corner Shop", "type": "manual", "itemName": "Rice 5kg", "itemPrice": "12500"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True, "message": "Item added!"})

        item = self.session.query(Item).one()
        self.assertEqual(item.name, "Rice 5kg")
        self.assertEqual(item.image, "/images/placeholder.png")
        self.assertEqual(item.seller.name, "Corner Shop")

    def test_manual_duplicate_is_reported(self):
        payload = {"sellerName": "Corner Shop", "type": "manual", "itemName": "Rice", "itemPrice": "10"}
        self.client.post("/api/seller", data=payload)
        response = self.client.post("/api/seller", data=payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Item already listed.")
        self.assertEqual(self.session.query(Item).count(), 1)

    def test_manual_item_with_image(self):
        response = self.client.post(
            "/api/seller",
            data={"sellerName": "Corner Shop", "type": "manual", "itemName": "Mug", "itemPrice": "7.50"},
            files={"image": ("mug.PNG", b"\x89PNG\r\n\x1a\n", "image/png")},
        )
        self.assertEqual(response.status_code, 200)

        item = self.session.query(Item).one()
        self.assertTrue(item.image.startswith("/uploads/"))
        self.assertTrue(item.image.endswith(".png"))
        stored = self.uploads_dir / item.image.rsplit("/", 1)[-1]
        self.assertEqual(stored.read_bytes(), b"\x89PNG\r\n\x1a\n")

    def test_duplicate_item_leaves_no_upload_behind(self):
        data = {"sellerName": "Corner Shop", "type": "manual", "itemName": "Mug", "itemPrice": "7.50"}
        first = self.client.post("/api/seller", data=data, files={"image": ("a.png", b"one", "image/png")})
        again = self.client.post("/api/seller", data=data, files={"image": ("b.png", b"two", "image/png")})

        self.assertEqual(first.json()["message"], "Item added!")
        self.assertEqual(again.json()["message"], "Item already listed.")
        stored = list(self.uploads_dir.iterdir())
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].read_bytes(), b"one")

    def test_oversized_price_is_rejected(self):
        response = self.client.post(
            "/api/seller",
            data={
                "sellerName": "Corner Shop",
                "type": "manual",
                "itemName": "Gold bar",
                "itemPrice": "1234567890123456789012345678901",
            },
            files={"image": ("gold.png", b"gold", "image/png")},
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.json())
        self.assertEqual(self.session.query(Item).count(), 0)
        self.assertEqual(list(self.uploads_dir.iterdir()), [])

    def test_registration_validation(self):
        cases = [
            {"type": "manual", "itemName": "Rice", "itemPrice": "10"},
            {"sellerName": "Shop", "type": "catalog"},
            {"sellerName": "Shop", "type": "manual", "itemPrice": "10"},
            {"sellerName": "Shop", "type": "manual", "itemName": "Rice", "itemPrice": "-1"},
            {"sellerName": "Shop", "type": "manual", "itemName": "Rice", "itemPrice": "cheap"},
            {"sellerName": "Shop", "type": "website"},
            {"sellerName": "Shop", "type": "website", "website": "ftp://shop.example"},
        ]
        for data in cases:
            response = self.client.post("/api/seller", data=data)
            self.assertEqual(response.status_code, 400, msg=str(data))
            self.assertIn("error", response.json())
        self.assertEqual(self.session.query(Seller).count(), 0)

    @patch("budgetsmart.ingestion.fetch_page", return_value=STORE_HTML)
    def test_website_registration_runs_job(self, mock_fetch):
        response = self.client.post(
            "/api/seller",
            data={"sellerName": "Tech Hub", "type": "website", "website": "techhub.example"},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertIn("background", body["message"])
        job_id = body["job_id"]

        # TestClient runs background tasks before returning
        mock_fetch.assert_called_once()
        self.assertEqual(mock_fetch.call_args.args[0], "https://techhub.example")

        job = self.client.get(f"/api/ingestion/{job_id}").json()["item"]
        self.assertEqual(job["status"], "succeeded")
        self.assertEqual(job["items_inserted"], 2)

        seller = self.session.query(Seller).one()
        self.assertEqual(seller.website, "https://techhub.example")
        self.assertEqual(self.session.query(Item).filter(Item.source == "website").count(), 2)

    @patch("budgetsmart.ingestion.fetch_page", side_effect=IngestionError("fetch failed: 502"))
    def test_website_registration_failure_still_succeeds(self, _mock_fetch):
        response = self.client.post(
            "/api/seller",
            data={"sellerName": "Tech Hub", "type": "website", "website": "https://techhub.example"},
        )
        self.assertEqual(response.status_code, 200)
        job = self.client.get(f"/api/ingestion/{response.json()['job_id']}").json()["item"]
        self.assertEqual(job["status"], "failed")
        self.assertIn("502", job["error_message"])

    def test_ingestion_job_not_found(self):
        response = self.client.get("/api/ingestion/missing")
        self.assertEqual(response.status_code, 404)

    def test_search(self):
        self._seed_laptops()
        response = self.client.post("/api/search", json={"items": ["Laptop", "Mouse"], "budget": 150000})
        self.assertEqual(response.status_code, 200)

        body = response.json()
        self.assertEqual(len(body["cheaper"]), 1)
        self.assertEqual(body["exact"], [])
        self.assertEqual(len(body["above"]), 1)
        self.assertEqual(body["cheaper"][0]["totalPrice"], 145000.0)
        self.assertEqual(body["cheaper"][0]["savings"], 5000.0)
        self.assertEqual(body["above"][0]["extra"], 5000.0)

    def test_search_with_unknown_item(self):
        self._seed_laptops()
        response = self.client.post("/api/search", json={"items": ["Laptop", "Printer"], "budget": 150000})
        self.assertEqual(response.json(), {"cheaper": [], "exact": [], "above": []})

    def test_search_malformed_input(self):
        empty = {"cheaper": [], "exact": [], "above": []}
        bad_bodies = [
            {"content": b"not json", "headers": {"content-type": "application/json"}},
            {"json": ["Laptop"]},
            {"json": {"items": "Laptop", "budget": 100}},
            {"json": {"items": ["Laptop"], "budget": "lots"}},
        ]
        for kwargs in bad_bodies:
            response = self.client.post("/api/search", **kwargs)
            self.assertEqual(response.status_code, 200, msg=str(kwargs))
            self.assertEqual(response.json(), empty, msg=str(kwargs))

    def test_debug(self):
        self._seed_laptops()
        body = self.client.get("/api/debug").json()
        self.assertEqual(len(body["items"]), 3)
        self.assertEqual(body["items"][0]["item_name"], "Mouse")
        self.assertEqual(body["items"][0]["price"], 5000.0)

        filtered = self.client.get("/api/debug", params={"q": "seller b"}).json()["items"]
        self.assertEqual([(r["item_name"], r["seller_name"]) for r in filtered], [("Laptop", "Seller B")])


if __name__ == "__main__":
    unittest.main()
