"""HTTP API for seller registration and budget basket search."""

from __future__ import annotations

import shutil
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from budgetsmart.config_loader import get_storage_config, load_config
from budgetsmart.ingestion import IngestionError, create_ingestion_job, normalize_source_url, run_ingestion_job
from budgetsmart.matching import BasketMatcher, BasketSearchResult
from budgetsmart.models import get_engine, get_session_factory, init_db
from budgetsmart.repositories import CatalogRepository, InvalidItemError, to_decimal_or_none


def _load_api_config():
    try:
        return load_config()
    except FileNotFoundError:
        fallback = Path(__file__).resolve().parents[1] / "config.yaml"
        return load_config(str(fallback))


_config = _load_api_config()
_engine = get_engine(_config)
_SessionFactory = get_session_factory(_engine)
_uploads_dir = Path(get_storage_config(_config).get("uploads_dir", "data/uploads"))


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _uploads_dir.mkdir(parents=True, exist_ok=True)
    init_db(_engine)
    yield


app = FastAPI(title="BudgetSmart API", version="1.0.0", lifespan=lifespan)
app.mount("/uploads", StaticFiles(directory=str(_uploads_dir), check_dir=False), name="uploads")


def get_config() -> Dict[str, Any]:
    return _config


def get_session():
    session = _SessionFactory()
    try:
        yield session
    finally:
        session.close()


def get_background_session_factory():
    """Session factory used by detached ingestion jobs."""
    return _SessionFactory


def get_uploads_dir() -> Path:
    return _uploads_dir


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _save_upload(image: UploadFile, uploads_dir: Path) -> str:
    uploads_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(image.filename or "").suffix.lower()
    stamp = int(time.time() * 1000)
    while (uploads_dir / f"{stamp}{suffix}").exists():
        stamp += 1
    filename = f"{stamp}{suffix}"
    with open(uploads_dir / filename, "wb") as fh:
        shutil.copyfileobj(image.file, fh)
    return f"/uploads/{filename}"


def _discard_upload(image_path: Optional[str], uploads_dir: Path) -> None:
    """Remove a saved upload whose item was not stored."""
    if not image_path:
        return
    try:
        (uploads_dir / image_path.rsplit("/", 1)[-1]).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove orphaned upload {image_path}: {e}")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/api/seller")
def register_seller(
    background_tasks: BackgroundTasks,
    seller_name: str = Form(default="", alias="sellerName"),
    website: Optional[str] = Form(default=None),
    item_name: Optional[str] = Form(default=None, alias="itemName"),
    item_price: Optional[str] = Form(default=None, alias="itemPrice"),
    submission_type: str = Form(default="manual", alias="type"),
    image: Optional[UploadFile] = File(default=None),
    session: Session = Depends(get_session),
    config: Dict[str, Any] = Depends(get_config),
    session_factory=Depends(get_background_session_factory),
    uploads_dir: Path = Depends(get_uploads_dir),
):
    seller_name = (seller_name or "").strip()
    submission_type = (submission_type or "").strip().lower()
    if not seller_name:
        return _error(400, "sellerName is required")

    if submission_type == "manual":
        item_name = (item_name or "").strip()
        price = to_decimal_or_none(item_price)
        if not item_name or price is None or price < 0:
            return _error(400, "itemName and a non-negative itemPrice are required")
    elif submission_type == "website":
        try:
            website = normalize_source_url(website)
        except IngestionError as e:
            return _error(400, f"a valid website is required: {e}")
    else:
        return _error(400, "Invalid data")

    repository = CatalogRepository(session)
    image_path = None
    try:
        seller_id = repository.find_or_create_seller(seller_name, website)

        if submission_type == "manual":
            if image is not None and image.filename:
                image_path = _save_upload(image, uploads_dir)
            item = repository.insert_item(seller_id, item_name, price, image_url=image_path, source="manual")
            if item is None:
                _discard_upload(image_path, uploads_dir)
                return {"success": True, "message": "Item already listed."}
            return {"success": True, "message": "Item added!"}

        job = create_ingestion_job(repository, seller_id, website)
    except InvalidItemError as e:
        _discard_upload(image_path, uploads_dir)
        return _error(400, str(e))
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Seller registration failed for '{seller_name}': {e}")
        session.rollback()
        _discard_upload(image_path, uploads_dir)
        return _error(500, str(e))

    background_tasks.add_task(run_ingestion_job, config, session_factory, job.job_uuid, seller_name)
    return {
        "success": True,
        "message": "Store connected! Products are being imported in the background.",
        "job_id": job.job_uuid,
    }


def _run_search(session: Session, config: Dict[str, Any], items: Any, budget: Any) -> Dict[str, Any]:
    matcher = BasketMatcher.from_config(CatalogRepository(session), config)
    return matcher.search(items, budget).as_dict()


@app.post("/api/search")
async def search_baskets(
    request: Request,
    session: Session = Depends(get_session),
    config: Dict[str, Any] = Depends(get_config),
):
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return BasketSearchResult().as_dict()

    try:
        return await run_in_threadpool(_run_search, session, config, payload.get("items"), payload.get("budget"))
    except SQLAlchemyError as e:
        logger.error(f"Basket search failed: {e}")
        return BasketSearchResult().as_dict()


@app.get("/api/debug")
def debug_catalog(
    q: Optional[str] = Query(default=None),
    session: Session = Depends(get_session),
    config: Dict[str, Any] = Depends(get_config),
):
    limit = int(config.get("api", {}).get("debug_limit", 30))
    rows = CatalogRepository(session).debug_rows(q, limit=limit)
    for row in rows:
        row["price"] = float(row["price"]) if row.get("price") is not None else None
    return {"items": rows}


@app.get("/api/ingestion/{job_id}")
def get_ingestion_job(job_id: str, session: Session = Depends(get_session)):
    job = CatalogRepository(session).get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Ingestion job not found: {job_id}")
    return {"item": job.as_dict()}
