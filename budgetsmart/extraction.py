"""Heuristic product extraction from arbitrary storefront markup."""

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Sequence
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from bs4.element import Tag
from loguru import logger

from budgetsmart.models import PLACEHOLDER_IMAGE


DEFAULT_CANDIDATE_SELECTORS = [
    'a[href*="/product"]',
    'a[href*="/item"]',
    ".product",
    ".item",
    ".card",
    "[data-product]",
]

DEFAULT_TITLE_SELECTORS = ["h1", "h2", "h3", ".title", ".name", "[data-title]"]

DEFAULT_PRICE_SELECTORS = [".price", ".amount", "[data-price]", ".product-price"]

DEFAULT_IMAGE_SELECTORS = ["img"]

# Primary source first, then the usual lazy-load attributes
IMAGE_ATTRIBUTES = ("src", "data-src", "data-lazy-src", "data-original")

DEFAULT_MAX_ITEMS = 150
DEFAULT_TITLE_MAX_LENGTH = 150

_PRICE_NUMBER = re.compile(r"\d+(?:\.\d*)?|\.\d+")


def parse_price(price_text: Optional[str]) -> Optional[Decimal]:
    """Parse a loosely formatted price string.

    Everything except digits and the decimal point is dropped, so currency
    symbols and thousands separators disappear: ``"₦12,500.00"`` becomes
    ``Decimal("12500.00")``. Text without digits (``"N/A"``) yields None.
    """
    if not price_text:
        return None

    cleaned = re.sub(r"[^0-9.]", "", price_text)
    match = _PRICE_NUMBER.match(cleaned)
    if not match:
        return None
    try:
        return Decimal(match.group())
    except InvalidOperation:
        return None


def _clean_text(value: Optional[str]) -> str:
    return " ".join((value or "").split())


@dataclass
class SelectorExtractor:
    """Value of the first element under a node matching ``selector``.

    ``selector`` may be a selector group; matches are taken in document
    order. ``attributes`` are read when the element has no text.
    """

    selector: str
    attributes: Sequence[str] = ()
    use_text: bool = True

    def extract(self, node: Tag) -> Optional[str]:
        try:
            element = node.select_one(self.selector)
        except Exception as e:
            logger.debug(f"Selector '{self.selector}' failed: {e}")
            return None
        if element is None:
            return None
        if self.use_text:
            text = _clean_text(element.get_text(" ", strip=True))
            if text:
                return text
        for attr in self.attributes:
            value = element.get(attr)
            if isinstance(value, list):
                value = " ".join(value)
            value = _clean_text(value)
            if value and not value.startswith("data:"):
                return value
        return None


@dataclass
class FieldChain:
    """Ordered extractors for one field; the first non-empty value wins."""

    extractors: List[SelectorExtractor] = field(default_factory=list)

    def first(self, node: Tag) -> Optional[str]:
        for extractor in self.extractors:
            value = extractor.extract(node)
            if value:
                return value
        return None


@dataclass
class ExtractorChain:
    """Candidate selectors plus title/price/image field chains."""

    candidate_selectors: List[List[str]]
    title: FieldChain
    price: FieldChain
    image: FieldChain

    def select_candidates(self, soup: BeautifulSoup) -> List[Tag]:
        """Candidate nodes from the first selector strategy that finds any."""
        for selectors in self.candidate_selectors:
            group = ", ".join(selectors)
            try:
                nodes = soup.select(group)
            except Exception as e:
                logger.warning(f"Candidate selector '{group}' failed: {e}")
                continue
            if nodes:
                return nodes
        return []


def build_extractor_chain(overrides: Optional[Dict[str, List[str]]] = None) -> ExtractorChain:
    """Build the default chain, with optional per-site selectors tried first.

    ``overrides`` maps ``candidates``/``title``/``price``/``image`` to
    selector lists, as found under ``ingestion.site_overrides`` in config.
    """
    overrides = overrides or {}

    candidate_selectors = []
    if overrides.get("candidates"):
        candidate_selectors.append(list(overrides["candidates"]))
    candidate_selectors.append(list(DEFAULT_CANDIDATE_SELECTORS))

    def _chain(key: str, defaults: List[str], attributes: Sequence[str], use_text: bool = True) -> FieldChain:
        extractors = [
            SelectorExtractor(selector, attributes=attributes, use_text=use_text)
            for selector in overrides.get(key) or []
        ]
        extractors.append(SelectorExtractor(", ".join(defaults), attributes=attributes, use_text=use_text))
        return FieldChain(extractors)

    return ExtractorChain(
        candidate_selectors=candidate_selectors,
        title=_chain("title", DEFAULT_TITLE_SELECTORS, ("data-title",)),
        price=_chain("price", DEFAULT_PRICE_SELECTORS, ("data-price", "content")),
        image=_chain("image", DEFAULT_IMAGE_SELECTORS, IMAGE_ATTRIBUTES, use_text=False),
    )


@dataclass
class ExtractedProduct:
    title: str
    price: Decimal
    image_url: str


@dataclass
class ExtractionResult:
    products: List[ExtractedProduct]
    candidates_seen: int = 0
    rejected: int = 0


def _node_own_image(node: Tag) -> Optional[str]:
    for attr in IMAGE_ATTRIBUTES[1:]:
        value = _clean_text(node.get(attr))
        if value and not value.startswith("data:"):
            return value
    return None


def extract_products(
    html: str,
    base_url: str,
    chain: Optional[ExtractorChain] = None,
    max_items: int = DEFAULT_MAX_ITEMS,
    title_max_length: int = DEFAULT_TITLE_MAX_LENGTH,
    placeholder_image: str = PLACEHOLDER_IMAGE,
) -> ExtractionResult:
    """Extract title/price/image triples from a storefront page.

    A candidate is accepted only with a non-empty title and a strictly
    positive price; anything else is skipped. At most ``max_items``
    products are returned.
    """
    chain = chain or build_extractor_chain()
    soup = BeautifulSoup(html or "", "html.parser")

    result = ExtractionResult(products=[])
    for node in chain.select_candidates(soup):
        if len(result.products) >= max_items:
            break
        result.candidates_seen += 1

        title = chain.title.first(node)
        if not title:
            title = _clean_text(node.get_text(" ", strip=True))[:title_max_length].strip()

        price = parse_price(chain.price.first(node))

        image = chain.image.first(node) or _node_own_image(node)
        image_url = urljoin(base_url, image) if image else placeholder_image

        if not title or price is None or price <= 0:
            result.rejected += 1
            continue

        result.products.append(ExtractedProduct(title=title, price=price, image_url=image_url))

    logger.debug(
        f"Extracted {len(result.products)} products from {result.candidates_seen} candidates "
        f"({result.rejected} rejected) at {base_url}"
    )
    return result
