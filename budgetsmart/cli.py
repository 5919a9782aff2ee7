"""Command-line interface for BudgetSmart."""

import json
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from loguru import logger

from budgetsmart.config_loader import ensure_directories, load_config
from budgetsmart.ingestion import IngestionError, create_ingestion_job, normalize_source_url, run_ingestion_job
from budgetsmart.matching import BasketMatcher
from budgetsmart.models import get_engine, get_session_factory, init_db
from budgetsmart.repositories import CatalogRepository, InvalidItemError


def setup_logging(config: dict):
    """Setup logging configuration."""
    log_config = config.get("logging", {})
    level = log_config.get("level", "INFO")
    log_file = log_config.get("file", "data/logs/budgetsmart.log")

    # Ensure log directory exists
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}",
    )
    logger.add(
        log_file,
        level=level,
        rotation=log_config.get("rotation", "1 week"),
        retention=log_config.get("retention", "1 month"),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name} | {message}",
    )


def _session_factory(config: dict, backend: Optional[str] = None):
    engine = get_engine(config, backend)
    init_db(engine)
    return get_session_factory(engine)


@click.group()
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """BudgetSmart - budget baskets from seller storefronts."""
    ctx.ensure_object(dict)

    try:
        cfg = load_config(config)
        ctx.obj["config"] = cfg
        ctx.obj["config_path"] = config

        ensure_directories(cfg)

        if verbose:
            cfg.setdefault("logging", {})["level"] = "DEBUG"
        setup_logging(cfg)

        logger.debug("BudgetSmart initialized")

    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--backend", type=click.Choice(["sqlite", "postgresql"]), default=None, help="Database backend")
@click.pass_context
def init(ctx, backend: Optional[str]):
    """Create database tables."""
    config = ctx.obj["config"]
    try:
        _session_factory(config, backend)
    except Exception as e:
        click.echo(f"Database initialization failed: {e}", err=True)
        sys.exit(1)
    click.echo("Database initialized.")


@cli.command("add-item")
@click.option("--seller", "seller_name", required=True, help="Seller name")
@click.option("--website", default=None, help="Seller website")
@click.option("--name", "item_name", required=True, help="Item name")
@click.option("--price", required=True, help="Item price")
@click.option("--image", default=None, help="Image URL or path")
@click.pass_context
def add_item(ctx, seller_name: str, website: Optional[str], item_name: str, price: str, image: Optional[str]):
    """Add one item manually."""
    Session = _session_factory(ctx.obj["config"])
    session = Session()
    try:
        repository = CatalogRepository(session)
        seller_id = repository.find_or_create_seller(seller_name, website)
        item = repository.insert_item(seller_id, item_name, price, image_url=image, source="manual")
    except (InvalidItemError, ValueError) as e:
        click.echo(f"Invalid item: {e}", err=True)
        sys.exit(2)
    finally:
        session.close()

    if item is None:
        click.echo("Item already listed for this seller.")
    else:
        click.echo(f"Item added for seller {seller_id}.")


@cli.command()
@click.option("--seller", "seller_name", required=True, help="Seller name")
@click.option("--url", "source_url", required=True, help="Storefront page to crawl")
@click.pass_context
def ingest(ctx, seller_name: str, source_url: str):
    """Crawl a storefront page and import its products."""
    config = ctx.obj["config"]
    Session = _session_factory(config)
    session = Session()
    try:
        source_url = normalize_source_url(source_url)
        repository = CatalogRepository(session)
        seller_id = repository.find_or_create_seller(seller_name, source_url)
        job = create_ingestion_job(repository, seller_id, source_url)
        job_uuid = job.job_uuid
    except IngestionError as e:
        click.echo(f"Invalid URL: {e}", err=True)
        sys.exit(2)
    finally:
        session.close()

    result = run_ingestion_job(config, Session, job_uuid, seller_label=seller_name)

    click.echo("\n" + "=" * 50)
    click.echo("INGESTION RESULTS")
    click.echo("=" * 50)
    click.echo(f"Job ID: {result['job_id']}")
    click.echo(f"Status: {result['status']}")
    click.echo(f"Candidates found: {result['candidates_found']}")
    click.echo(f"Items inserted: {result['items_inserted']}")
    click.echo(f"Duplicates skipped: {result['duplicates_skipped']}")
    if result.get("error_message"):
        click.echo(f"Error: {result['error_message']}")

    if result["status"] == "failed":
        sys.exit(1)


@cli.command()
@click.argument("items", nargs=-1, required=True)
@click.option("--budget", "-b", required=True, help="Budget for the whole basket")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def search(ctx, items: Tuple[str, ...], budget: str, as_json: bool):
    """Find baskets for ITEMS within BUDGET."""
    config = ctx.obj["config"]
    Session = _session_factory(config)
    session = Session()
    try:
        matcher = BasketMatcher.from_config(CatalogRepository(session), config)
        result = matcher.search(list(items), budget).as_dict()
    finally:
        session.close()

    if as_json:
        click.echo(json.dumps(result, indent=2, ensure_ascii=False))
        return

    titles = {"cheaper": "Cheaper", "exact": "Exact", "above": "Above budget"}
    for band, title in titles.items():
        click.echo(f"\n{title}:")
        baskets = result[band]
        if not baskets:
            click.echo("  No results found")
            continue
        for basket in baskets:
            delta = ""
            if "savings" in basket:
                delta = f" (save {basket['savings']:.2f})"
            elif "extra" in basket:
                delta = f" (+{basket['extra']:.2f})"
            click.echo(f"  Total {basket['totalPrice']:.2f}{delta}")
            for line in basket["items"]:
                click.echo(f"    - {line['item_name']}: {line['price']:.2f} @ {line['seller_name']}")


@cli.command()
@click.option("--limit", "-n", default=15, help="Max jobs to list")
@click.pass_context
def jobs(ctx, limit: int):
    """Show recent ingestion jobs."""
    Session = _session_factory(ctx.obj["config"])
    session = Session()
    try:
        rows = [job.as_dict() for job in CatalogRepository(session).list_jobs(limit=limit)]
    finally:
        session.close()

    if not rows:
        click.echo("No ingestion jobs recorded.")
        return
    for row in rows:
        click.echo(
            f"{row['job_id']}  {row['status']:<9}  items={row['items_inserted']:<4} "
            f"dupes={row['duplicates_skipped']:<4} {row['source_url']}"
        )


@cli.command()
@click.option("--host", default=None, help="Bind host")
@click.option("--port", type=int, default=None, help="Bind port")
@click.pass_context
def serve(ctx, host: Optional[str], port: Optional[int]):
    """Run the HTTP API."""
    import uvicorn

    api_cfg = ctx.obj["config"].get("api", {})
    uvicorn.run(
        "budgetsmart.api:app",
        host=host or api_cfg.get("host", "0.0.0.0"),
        port=int(port or api_cfg.get("port", 3000)),
    )


if __name__ == "__main__":
    cli()
