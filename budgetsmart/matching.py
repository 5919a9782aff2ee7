"""Budget basket matching over the catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from loguru import logger

from budgetsmart.config_loader import get_matching_config
from budgetsmart.repositories import CatalogRepository, normalize_text, to_decimal_or_none


BAND_CHEAPER = "cheaper"
BAND_EXACT = "exact"
BAND_ABOVE = "above"

DEFAULT_EPSILON = Decimal("0.01")
DEFAULT_ABOVE_RATIO = Decimal("1.15")
DEFAULT_MAX_RESULTS = 3

DEDUP_ITEMS = "items"
DEDUP_NAME_SET = "name_set"
DEDUP_POLICIES = {DEDUP_ITEMS, DEDUP_NAME_SET}


def parse_budget(value: Any) -> Optional[Decimal]:
    """Budget as a non-negative Decimal, or None when it is not usable."""
    budget = to_decimal_or_none(value)
    if budget is None or budget < 0:
        return None
    return budget


def normalize_wish_list(items: Any) -> List[str]:
    """Trimmed requested names; blanks dropped, duplicates collapsed case-insensitively."""
    if isinstance(items, str) or not isinstance(items, (list, tuple)):
        return []
    names: List[str] = []
    seen = set()
    for raw in items:
        if raw is None or isinstance(raw, (dict, list, tuple)):
            continue
        name = " ".join(str(raw).split())
        key = normalize_text(name)
        if not key or key in seen:
            continue
        seen.add(key)
        names.append(name)
    return names


def _money(value: Optional[Decimal]) -> Optional[float]:
    if value is None:
        return None
    return float(Decimal(value).quantize(Decimal("0.01")))


@dataclass
class BasketLine:
    """One catalog item standing in for one requested name."""

    requested_name: str
    item_id: int
    item_name: str
    price: Decimal
    image: Optional[str]
    seller_id: int
    seller_name: str
    website: Optional[str]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "requested_name": self.requested_name,
            "item_name": self.item_name,
            "price": _money(self.price),
            "image": self.image,
            "seller_name": self.seller_name,
            "website": self.website,
        }


@dataclass
class Basket:
    lines: List[BasketLine]
    total_price: Decimal
    band: str = ""
    savings: Optional[Decimal] = None
    extra: Optional[Decimal] = None

    @property
    def websites(self) -> List[str]:
        out: List[str] = []
        for line in self.lines:
            if line.website and line.website not in out:
                out.append(line.website)
        return out

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "items": [line.as_dict() for line in self.lines],
            "totalPrice": _money(self.total_price),
            "websites": self.websites,
        }
        if self.savings is not None:
            payload["savings"] = _money(self.savings)
        if self.extra is not None:
            payload["extra"] = _money(self.extra)
        return payload


@dataclass
class BasketSearchResult:
    cheaper: List[Basket] = field(default_factory=list)
    exact: List[Basket] = field(default_factory=list)
    above: List[Basket] = field(default_factory=list)

    def all_baskets(self) -> List[Basket]:
        return [*self.cheaper, *self.exact, *self.above]

    def as_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            BAND_CHEAPER: [b.as_dict() for b in self.cheaper],
            BAND_EXACT: [b.as_dict() for b in self.exact],
            BAND_ABOVE: [b.as_dict() for b in self.above],
        }


def classify_total(
    total: Decimal,
    budget: Decimal,
    epsilon: Decimal = DEFAULT_EPSILON,
    above_ratio: Decimal = DEFAULT_ABOVE_RATIO,
) -> Tuple[Optional[str], Optional[Decimal]]:
    """Return (band, delta) for a basket total; band is None when excluded.

    delta is the savings for cheaper baskets and the extra spend for
    baskets above budget.
    """
    if total < budget - epsilon:
        return BAND_CHEAPER, budget - total
    if abs(total - budget) <= epsilon:
        return BAND_EXACT, None
    if total <= budget * above_ratio:
        return BAND_ABOVE, total - budget
    return None, None


def enumerate_combinations(
    names: Sequence[str],
    candidates: Dict[str, List[BasketLine]],
    max_total: Optional[Decimal] = None,
) -> Iterator[List[BasketLine]]:
    """Yield every choice of one candidate per requested name.

    Names are filled in request order; a catalog item never fills two
    names in the same basket. With ``max_total`` set, partial baskets that
    cannot finish at or below it (even with the cheapest remaining
    candidates) are skipped; no basket totalling ``max_total`` or less is
    lost.
    """
    # Cheapest possible completion from each position onwards
    floor_from = [Decimal("0")] * (len(names) + 1)
    for index in range(len(names) - 1, -1, -1):
        prices = [line.price for line in candidates.get(names[index], [])]
        floor_from[index] = floor_from[index + 1] + (min(prices) if prices else Decimal("0"))

    chosen: List[BasketLine] = []
    used_ids = set()

    def _fill(index: int, running: Decimal) -> Iterator[List[BasketLine]]:
        if index == len(names):
            yield list(chosen)
            return
        for line in candidates.get(names[index], []):
            if line.item_id in used_ids:
                continue
            subtotal = running + line.price
            if max_total is not None and subtotal + floor_from[index + 1] > max_total:
                continue
            chosen.append(line)
            used_ids.add(line.item_id)
            yield from _fill(index + 1, subtotal)
            chosen.pop()
            used_ids.discard(line.item_id)

    yield from _fill(0, Decimal("0"))


def _dedup_key(lines: Sequence[BasketLine], policy: str) -> Tuple:
    if policy == DEDUP_NAME_SET:
        return tuple(sorted(normalize_text(line.requested_name) for line in lines))
    return tuple(
        sorted(
            (
                normalize_text(line.requested_name),
                normalize_text(line.item_name),
                line.seller_id,
                Decimal(line.price).quantize(Decimal("0.01")),
            )
            for line in lines
        )
    )


class BasketMatcher:
    """Builds cheaper / exact / above baskets for a wish list and budget."""

    def __init__(
        self,
        repository: CatalogRepository,
        epsilon: Any = DEFAULT_EPSILON,
        above_ratio: Any = DEFAULT_ABOVE_RATIO,
        max_results: int = DEFAULT_MAX_RESULTS,
        dedup: str = DEDUP_ITEMS,
    ):
        self.repository = repository
        self.epsilon = to_decimal_or_none(epsilon)
        self.above_ratio = to_decimal_or_none(above_ratio)
        if self.epsilon is None or self.epsilon < 0:
            raise ValueError(f"invalid epsilon: {epsilon!r}")
        if self.above_ratio is None or self.above_ratio < 1:
            raise ValueError(f"invalid above_ratio: {above_ratio!r}")
        if int(max_results) <= 0:
            raise ValueError("max_results must be greater than 0")
        dedup = (dedup or DEDUP_ITEMS).lower()
        if dedup not in DEDUP_POLICIES:
            raise ValueError(f"invalid dedup policy: use {', '.join(sorted(DEDUP_POLICIES))}")
        self.max_results = int(max_results)
        self.dedup = dedup

    @classmethod
    def from_config(cls, repository: CatalogRepository, config: Dict[str, Any]) -> "BasketMatcher":
        matching_cfg = get_matching_config(config)
        return cls(
            repository,
            epsilon=matching_cfg.get("epsilon", DEFAULT_EPSILON),
            above_ratio=matching_cfg.get("above_ratio", DEFAULT_ABOVE_RATIO),
            max_results=matching_cfg.get("max_results", DEFAULT_MAX_RESULTS),
            dedup=matching_cfg.get("dedup", DEDUP_ITEMS),
        )

    def _candidates(self, names: Sequence[str]) -> Dict[str, List[BasketLine]]:
        candidates: Dict[str, List[BasketLine]] = {}
        for name in names:
            candidates[name] = [
                BasketLine(
                    requested_name=name,
                    item_id=row["item_id"],
                    item_name=row["item_name"],
                    price=to_decimal_or_none(row["price"]) or Decimal("0"),
                    image=row.get("image"),
                    seller_id=row["seller_id"],
                    seller_name=row["seller_name"],
                    website=row.get("website"),
                )
                for row in self.repository.search_by_name(name)
            ]
        return candidates

    def search(self, items: Any, budget: Any) -> BasketSearchResult:
        """Match a wish list against the catalog.

        Malformed input (no usable names, unusable budget) and wish lists
        with any unmatched name both produce empty bands.
        """
        result = BasketSearchResult()
        names = normalize_wish_list(items)
        budget_value = parse_budget(budget)
        if not names or budget_value is None:
            logger.debug(f"Ignoring search with items={items!r} budget={budget!r}")
            return result

        candidates = self._candidates(names)
        missing = [name for name in names if not candidates.get(name)]
        if missing:
            logger.info(f"No catalog match for {missing}; returning empty baskets")
            return result

        # Nothing above this total can land in any band
        ceiling = max(budget_value * self.above_ratio, budget_value + self.epsilon)

        seen_keys = set()
        for lines in enumerate_combinations(names, candidates, max_total=ceiling):
            total = sum((line.price for line in lines), Decimal("0"))
            band, delta = classify_total(total, budget_value, self.epsilon, self.above_ratio)
            if band is None:
                continue

            key = _dedup_key(lines, self.dedup)
            if key in seen_keys:
                continue
            seen_keys.add(key)

            basket = Basket(lines=lines, total_price=total, band=band)
            if band == BAND_CHEAPER:
                basket.savings = delta
                result.cheaper.append(basket)
            elif band == BAND_EXACT:
                result.exact.append(basket)
            else:
                basket.extra = delta
                result.above.append(basket)

        result.cheaper.sort(key=lambda b: b.savings, reverse=True)
        result.above.sort(key=lambda b: b.extra)

        result.cheaper = result.cheaper[: self.max_results]
        result.exact = result.exact[: self.max_results]
        result.above = result.above[: self.max_results]

        logger.info(
            f"Search {names} budget={budget_value}: {len(seen_keys)} distinct baskets -> "
            f"cheaper={len(result.cheaper)} exact={len(result.exact)} above={len(result.above)}"
        )
        return result


def find_baskets(
    repository: CatalogRepository,
    items: Any,
    budget: Any,
    config: Optional[Dict[str, Any]] = None,
) -> BasketSearchResult:
    """Convenience wrapper building a matcher from config and running one search."""
    return BasketMatcher.from_config(repository, config or {}).search(items, budget)
