"""Basic tests for BudgetSmart configuration and models."""

import os
import sys
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from budgetsmart.config_loader import (
    ensure_directories,
    get_ingestion_config,
    get_matching_config,
    get_site_overrides,
    load_config,
)
from budgetsmart.models import PLACEHOLDER_IMAGE, IngestionJob, Item, Seller, get_engine, get_session_factory, init_db


REPO_CONFIG = str(Path(__file__).parent.parent / "config.yaml")


class TestConfig(unittest.TestCase):
    """Test configuration loading."""

    def test_load_config(self):
        config = load_config(REPO_CONFIG)
        self.assertIn("storage", config)
        self.assertIn("ingestion", config)
        self.assertIn("matching", config)

    def test_defaults(self):
        config = load_config(REPO_CONFIG)
        ingestion = get_ingestion_config(config)
        matching = get_matching_config(config)

        self.assertEqual(ingestion.get("timeout_seconds"), 10)
        self.assertEqual(ingestion.get("max_items"), 150)
        self.assertEqual(ingestion.get("placeholder_image"), PLACEHOLDER_IMAGE)
        self.assertEqual(matching.get("epsilon"), 0.01)
        self.assertEqual(matching.get("above_ratio"), 1.15)
        self.assertEqual(matching.get("max_results"), 3)

    def test_env_substitution(self):
        with patch.dict(os.environ, {"BUDGETSMART_DB_PATH": "/tmp/override.db"}):
            config = load_config(REPO_CONFIG)
        self.assertEqual(config["storage"]["sqlite"]["database_path"], "/tmp/override.db")

    def test_missing_config(self):
        with self.assertRaises(FileNotFoundError):
            load_config("/nonexistent/config.yaml")

    def test_site_overrides(self):
        config = {
            "ingestion": {
                "site_overrides": {
                    "www.shop.example": {"candidates": ["li.tile"], "price": [".money"]},
                }
            }
        }
        self.assertEqual(
            get_site_overrides(config, "shop.example"),
            {"candidates": ["li.tile"], "price": [".money"]},
        )
        self.assertEqual(get_site_overrides(config, "SHOP.example"), get_site_overrides(config, "www.shop.example"))
        self.assertEqual(get_site_overrides(config, "other.example"), {})
        self.assertEqual(get_site_overrides(config, None), {})

    def test_ensure_directories(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = {
                "storage": {
                    "sqlite": {"database_path": os.path.join(tmp, "db", "bs.db")},
                    "uploads_dir": os.path.join(tmp, "uploads"),
                },
                "logging": {"file": os.path.join(tmp, "logs", "bs.log")},
            }
            ensure_directories(config)
            for sub in ("db", "uploads", "logs"):
                self.assertTrue(Path(tmp, sub).is_dir(), sub)


class TestDatabase(unittest.TestCase):
    """Test database operations."""

    def setUp(self):
        config = {"storage": {"default_backend": "sqlite", "sqlite": {"database_path": ":memory:"}}}
        self.engine = get_engine(config, "sqlite")
        init_db(self.engine)
        self.session = get_session_factory(self.engine)()

    def tearDown(self):
        self.session.close()

    def test_create_seller_and_item(self):
        seller = Seller(name="Corner Shop", seller_key="corner shop")
        self.session.add(seller)
        self.session.flush()

        item = Item(seller_id=seller.id, name="Rice", price=Decimal("10.50"), fingerprint="f" * 40)
        self.session.add(item)
        self.session.commit()

        stored = self.session.query(Item).one()
        self.assertEqual(stored.image, PLACEHOLDER_IMAGE)
        self.assertEqual(stored.source, "manual")
        self.assertEqual(stored.seller.name, "Corner Shop")

    def test_deleting_seller_cascades(self):
        seller = Seller(name="Corner Shop", seller_key="corner shop")
        seller.items.append(Item(name="Rice", price=Decimal("1"), fingerprint="a" * 40))
        seller.ingestion_jobs.append(IngestionJob(job_uuid="job-1", source_url="https://corner.example"))
        self.session.add(seller)
        self.session.commit()

        self.session.delete(seller)
        self.session.commit()
        self.assertEqual(self.session.query(Item).count(), 0)
        self.assertEqual(self.session.query(IngestionJob).count(), 0)

    def test_job_as_dict(self):
        seller = Seller(name="Corner Shop", seller_key="corner shop")
        self.session.add(seller)
        self.session.flush()
        job = IngestionJob(job_uuid="job-2", seller_id=seller.id, source_url="https://corner.example")
        self.session.add(job)
        self.session.commit()

        payload = job.as_dict()
        self.assertEqual(payload["job_id"], "job-2")
        self.assertEqual(payload["status"], "pending")
        self.assertEqual(payload["items_inserted"], 0)
        self.assertIsNone(payload["completed_at"])

    def test_unsupported_backend(self):
        with self.assertRaises(ValueError):
            get_engine({}, "mysql")


if __name__ == "__main__":
    unittest.main()
