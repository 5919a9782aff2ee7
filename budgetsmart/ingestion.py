"""Storefront ingestion pipeline: fetch, extract, store."""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

import requests
from loguru import logger

from budgetsmart.config_loader import get_ingestion_config, get_site_overrides
from budgetsmart.extraction import (
    DEFAULT_MAX_ITEMS,
    DEFAULT_TITLE_MAX_LENGTH,
    build_extractor_chain,
    extract_products,
)
from budgetsmart.models import PLACEHOLDER_IMAGE, IngestionJob
from budgetsmart.repositories import CatalogRepository, InvalidItemError


DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; BudgetSmart/1.0)"


class IngestionError(Exception):
    """Raised when a storefront run cannot complete.

    ``summary`` carries the counts reached before the failure, if any.
    """

    def __init__(self, message: str, summary: Optional["IngestionSummary"] = None):
        super().__init__(message)
        self.summary = summary


def normalize_source_url(url: Optional[str]) -> str:
    """Return an absolute http(s) URL, assuming https when no scheme is given."""
    url = (url or "").strip()
    if not url:
        raise IngestionError("source URL is empty")
    if "://" not in url:
        url = f"https://{url}"
    parts = urlsplit(url)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise IngestionError(f"unsupported source URL: {url}")
    return url


def fetch_page(url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS, user_agent: str = DEFAULT_USER_AGENT) -> str:
    """Fetch a page once. Timeouts and non-2xx responses raise IngestionError."""
    try:
        response = requests.get(url, timeout=timeout, headers={"User-Agent": user_agent})
        response.raise_for_status()
    except requests.RequestException as e:
        raise IngestionError(f"fetch failed for {url}: {e}") from e
    return response.text


@dataclass
class IngestionSummary:
    seller_id: int
    source_url: str
    candidates_found: int = 0
    items_inserted: int = 0
    duplicates_skipped: int = 0
    rejected: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "seller_id": self.seller_id,
            "source_url": self.source_url,
            "candidates_found": self.candidates_found,
            "items_inserted": self.items_inserted,
            "duplicates_skipped": self.duplicates_skipped,
            "rejected": self.rejected,
        }


class StorefrontIngestor:
    """Turns a seller's storefront page into catalog items."""

    def __init__(
        self,
        config: Dict[str, Any],
        repository: CatalogRepository,
        fetcher: Optional[Callable[..., str]] = None,
    ):
        self.config = config
        self.repository = repository
        self.fetcher = fetcher or fetch_page

        ingestion_cfg = get_ingestion_config(config)
        self.timeout = float(ingestion_cfg.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS))
        self.max_items = int(ingestion_cfg.get("max_items", DEFAULT_MAX_ITEMS))
        self.title_max_length = int(ingestion_cfg.get("title_max_length", DEFAULT_TITLE_MAX_LENGTH))
        self.placeholder_image = str(ingestion_cfg.get("placeholder_image") or PLACEHOLDER_IMAGE)
        self.user_agent = str(ingestion_cfg.get("user_agent") or DEFAULT_USER_AGENT)
        if self.max_items <= 0:
            raise ValueError("ingestion.max_items must be greater than 0")

    def ingest(self, seller_id: int, source_url: str, seller_label: str = "") -> IngestionSummary:
        """Run one ingestion pass.

        Raises IngestionError when the page cannot be fetched, parsed or
        stored. Items inserted before a failure are kept.
        """
        source_url = normalize_source_url(source_url)
        label = seller_label or f"seller {seller_id}"
        summary = IngestionSummary(seller_id=seller_id, source_url=source_url)

        logger.info(f"Fetching storefront for {label}: {source_url}")
        html = self.fetcher(source_url, timeout=self.timeout, user_agent=self.user_agent)

        chain = build_extractor_chain(get_site_overrides(self.config, urlsplit(source_url).hostname))
        try:
            extraction = extract_products(
                html,
                base_url=source_url,
                chain=chain,
                max_items=self.max_items,
                title_max_length=self.title_max_length,
                placeholder_image=self.placeholder_image,
            )
        except Exception as e:
            raise IngestionError(f"parse failed for {source_url}: {e}") from e

        summary.candidates_found = extraction.candidates_seen
        summary.rejected = extraction.rejected
        if not extraction.products:
            logger.warning(f"No products extracted for {label} from {source_url}")
            return summary

        for product in extraction.products:
            try:
                item = self.repository.insert_item(
                    seller_id,
                    product.title,
                    product.price,
                    image_url=product.image_url,
                    source="website",
                )
            except InvalidItemError as e:
                logger.debug(f"Rejected '{product.title}' from {source_url}: {e}")
                summary.rejected += 1
                continue
            except Exception as e:
                raise IngestionError(f"store write failed for '{product.title}': {e}", summary=summary) from e
            if item is None:
                summary.duplicates_skipped += 1
            else:
                summary.items_inserted += 1

        logger.info(
            f"{label}: {summary.items_inserted} items added, "
            f"{summary.duplicates_skipped} duplicates skipped, {summary.rejected} rejected "
            f"({summary.candidates_found} candidates)"
        )
        return summary


def create_ingestion_job(repository: CatalogRepository, seller_id: int, source_url: str) -> IngestionJob:
    """Record a pending ingestion job for later execution."""
    job = repository.create_job(seller_id, normalize_source_url(source_url))
    logger.info(f"Queued ingestion job {job.job_uuid} for seller {seller_id}")
    return job


def run_ingestion_job(
    config: Dict[str, Any],
    session_factory,
    job_uuid: str,
    seller_label: str = "",
    fetcher: Optional[Callable[..., str]] = None,
) -> Optional[Dict[str, Any]]:
    """Execute a queued job in its own session and record the outcome.

    Intended to run detached from the request that queued it, so failures
    are logged and stored on the job instead of being raised.
    """
    session = session_factory()
    try:
        repository = CatalogRepository(session)
        job = repository.get_job(job_uuid)
        if job is None:
            logger.error(f"Ingestion job {job_uuid} not found")
            return None

        repository.mark_job_running(job)
        try:
            ingestor = StorefrontIngestor(config, repository, fetcher=fetcher)
            summary = ingestor.ingest(job.seller_id, job.source_url, seller_label)
        except Exception as e:
            logger.error(f"Ingestion job {job_uuid} failed for {job.source_url}: {e}")
            session.rollback()
            partial = getattr(e, "summary", None)
            repository.mark_job_failed(
                job,
                str(e),
                items_inserted=partial.items_inserted if partial is not None else 0,
            )
            return job.as_dict()

        repository.mark_job_finished(
            job,
            candidates_found=summary.candidates_found,
            items_inserted=summary.items_inserted,
            duplicates_skipped=summary.duplicates_skipped,
        )
        return job.as_dict()
    finally:
        session.close()
