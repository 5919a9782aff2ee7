"""Repository layer for catalog reads and writes."""

from __future__ import annotations

import hashlib
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from budgetsmart.models import PLACEHOLDER_IMAGE, IngestionJob, Item, Seller, now_utc


CENT = Decimal("0.01")

# Largest value items.price (Numeric(12, 2)) can hold
MAX_PRICE = Decimal("9999999999.99")


class InvalidItemError(ValueError):
    """Raised when an item cannot be stored (empty name, bad price)."""
    pass


def normalize_text(value: Optional[str]) -> str:
    """Lowercase and collapse whitespace for key comparisons."""
    if not value:
        return ""
    return " ".join(value.strip().lower().split())


def to_decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        parsed = Decimal(str(value).strip())
    except (TypeError, ValueError, InvalidOperation):
        return None
    return parsed if parsed.is_finite() else None


def item_fingerprint(seller_id: int, name: str, price: Decimal) -> str:
    """Content key used to make repeated ingestion idempotent."""
    rounded = Decimal(price).quantize(CENT)
    raw = f"{seller_id}|{normalize_text(name)}|{rounded}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _rollback_before_retry(retry_state) -> None:
    repository = retry_state.args[0]
    logger.warning(
        "Catalog write failed ({}), retrying attempt {}",
        retry_state.outcome.exception(),
        retry_state.attempt_number + 1,
    )
    repository.session.rollback()


# SQLite reports "database is locked" as OperationalError while another
# writer (usually a background ingestion) holds the lock.
_retry_on_locked = retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    before_sleep=_rollback_before_retry,
    reraise=True,
)


class CatalogRepository:
    """SQLAlchemy access to sellers, items and ingestion jobs."""

    def __init__(self, session: Session):
        self.session = session

    # Sellers

    def _find_seller(self, name: str, website: Optional[str]) -> Optional[Seller]:
        conditions = [Seller.name == name]
        if website:
            conditions.append(Seller.website == website)
            conditions.append(Seller.website.contains(website, autoescape=True))
        return (
            self.session.query(Seller)
            .filter(or_(*conditions))
            .order_by(Seller.id.asc())
            .first()
        )

    @_retry_on_locked
    def find_or_create_seller(self, name: str, website: Optional[str] = None) -> int:
        """Return the id of the seller matching name or website, creating it if absent.

        The insert relies on the unique ``seller_key`` index; when a
        concurrent registration wins the race the existing row is read back
        instead of creating a duplicate.
        """
        name = (name or "").strip()
        website = (website or "").strip() or None
        if not name:
            raise ValueError("seller name is required")

        existing = self._find_seller(name, website)
        if existing is not None:
            return existing.id

        seller_key = normalize_text(name)
        seller = Seller(name=name, website=website, seller_key=seller_key)
        self.session.add(seller)
        try:
            self.session.commit()
            logger.info(f"Created seller '{name}' (id={seller.id})")
            return seller.id
        except IntegrityError:
            self.session.rollback()
            winner = self.session.query(Seller).filter(Seller.seller_key == seller_key).first()
            if winner is None:
                raise
            logger.debug(f"Seller '{name}' created concurrently; reusing id={winner.id}")
            return winner.id

    # Items

    @_retry_on_locked
    def insert_item(
        self,
        seller_id: int,
        name: str,
        price: Any,
        image_url: Optional[str] = None,
        source: str = "manual",
    ) -> Optional[Item]:
        """Insert an item; return None when an identical item already exists."""
        name = " ".join((name or "").split())
        if not name:
            raise InvalidItemError("item name is required")
        parsed_price = to_decimal_or_none(price)
        if parsed_price is None or parsed_price < 0 or parsed_price > MAX_PRICE:
            raise InvalidItemError(f"invalid item price: {price!r}")
        parsed_price = parsed_price.quantize(CENT)

        fingerprint = item_fingerprint(seller_id, name, parsed_price)
        item = Item(
            seller_id=seller_id,
            name=name,
            price=parsed_price,
            image=image_url or PLACEHOLDER_IMAGE,
            fingerprint=fingerprint,
            source=source,
        )
        self.session.add(item)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            duplicate = self.session.query(Item.id).filter(Item.fingerprint == fingerprint).first()
            if duplicate is None:
                # Not a fingerprint clash (e.g. unknown seller_id)
                raise
            logger.debug(f"Skipping duplicate item '{name}' for seller {seller_id}")
            return None
        return item

    def count_items(self, seller_id: Optional[int] = None) -> int:
        query = self.session.query(Item)
        if seller_id is not None:
            query = query.filter(Item.seller_id == seller_id)
        return query.count()

    def search_by_name(self, pattern: str) -> List[Dict[str, Any]]:
        """Case-insensitive substring search on item names, joined with seller info."""
        pattern = (pattern or "").strip()
        if not pattern:
            return []
        rows = (
            self.session.query(
                Item.id.label("item_id"),
                Item.name.label("item_name"),
                Item.price,
                Item.image,
                Seller.id.label("seller_id"),
                Seller.name.label("seller_name"),
                Seller.website,
            )
            .join(Seller, Item.seller_id == Seller.id)
            .filter(Item.name.ilike(f"%{_escape_like(pattern)}%", escape="\\"))
            .order_by(Item.id.asc())
            .all()
        )
        return [dict(row._mapping) for row in rows]

    def debug_rows(self, q: Optional[str] = None, limit: int = 30) -> List[Dict[str, Any]]:
        """Raw catalog rows whose item or seller name contains ``q``."""
        query = (
            self.session.query(
                Item.id.label("item_id"),
                Item.name.label("item_name"),
                Item.price,
                Item.image,
                Item.source,
                Seller.name.label("seller_name"),
                Seller.website,
            )
            .join(Seller, Item.seller_id == Seller.id)
        )
        q = (q or "").strip()
        if q:
            like = f"%{_escape_like(q)}%"
            query = query.filter(
                or_(
                    Item.name.ilike(like, escape="\\"),
                    Seller.name.ilike(like, escape="\\"),
                )
            )
        rows = query.order_by(Item.id.desc()).limit(max(1, limit)).all()
        return [dict(row._mapping) for row in rows]

    # Ingestion jobs

    def create_job(self, seller_id: int, source_url: str) -> IngestionJob:
        job = IngestionJob(
            job_uuid=str(uuid.uuid4()),
            seller_id=seller_id,
            source_url=source_url,
            status="pending",
        )
        self.session.add(job)
        self.session.commit()
        return job

    def get_job(self, job_uuid: str) -> Optional[IngestionJob]:
        return self.session.query(IngestionJob).filter(IngestionJob.job_uuid == job_uuid).first()

    def list_jobs(self, seller_id: Optional[int] = None, limit: int = 20) -> List[IngestionJob]:
        query = self.session.query(IngestionJob)
        if seller_id is not None:
            query = query.filter(IngestionJob.seller_id == seller_id)
        return query.order_by(IngestionJob.id.desc()).limit(max(1, limit)).all()

    def mark_job_running(self, job: IngestionJob) -> None:
        job.status = "running"
        job.started_at = now_utc()
        self.session.commit()

    def mark_job_finished(
        self,
        job: IngestionJob,
        candidates_found: int,
        items_inserted: int,
        duplicates_skipped: int,
    ) -> None:
        job.status = "succeeded"
        job.candidates_found = candidates_found
        job.items_inserted = items_inserted
        job.duplicates_skipped = duplicates_skipped
        job.completed_at = now_utc()
        self.session.commit()

    def mark_job_failed(self, job: IngestionJob, error_message: str, items_inserted: int = 0) -> None:
        job.status = "failed"
        job.error_message = error_message
        job.items_inserted = items_inserted
        job.completed_at = now_utc()
        self.session.commit()
