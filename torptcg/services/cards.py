import asyncio
import html
import re
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..utils.config import DEFAULT_SINGLE_PRICE, DUAL_DOMAIN
from ..utils.errors import BinStoreError, ConfigurationError
from ..utils.logger import logger
from .bin_store import BinStore
from .catalog import extract_records, record_key, to_float, to_int
from .inventory import InventoryService

_TAG_RE = re.compile(r"<[^>]+>")


def domain_ids(card: Dict[str, Any]) -> List[str]:
    domain = card.get("domain")
    values = domain.get("values") if isinstance(domain, dict) else None
    if not isinstance(values, list):
        return []
    ids = []
    for value in values:
        if isinstance(value, dict) and value.get("id"):
            ids.append(str(value["id"]))
    return ids


def is_dual_domain(card: Dict[str, Any]) -> bool:
    domain = card.get("domain")
    values = domain.get("values") if isinstance(domain, dict) else None
    return isinstance(values, list) and len(values) >= 2


def route_bin(card: Dict[str, Any], card_bins: Mapping[str, str]) -> Optional[str]:
    """Bin a card belongs in: the shared dual bin for dual-domain cards, else its domain's bin."""
    if is_dual_domain(card):
        return card_bins.get(DUAL_DOMAIN)
    ids = domain_ids(card)
    if not ids:
        return None
    return card_bins.get(ids[0])


def strip_html(value: str) -> str:
    return html.unescape(_TAG_RE.sub(" ", value or "")).strip()


def _contains(text: Any, needle: str) -> bool:
    if not needle:
        return True
    if text is None or text == "":
        return False
    return needle.lower() in str(text).lower()


def _nested_id(card: Dict[str, Any], field: str) -> Any:
    node = card.get(field)
    value = node.get("value") if isinstance(node, dict) else None
    return value.get("id") if isinstance(value, dict) else None


def _in_range(value: Any, low: Optional[float], high: Optional[float]) -> bool:
    if value is None:
        return True
    number = to_float(value, default=None)
    if number is None:
        return True
    if low is not None and number < low:
        return False
    if high is not None and number > high:
        return False
    return True


def parse_card_filters(query: Mapping[str, str]) -> Dict[str, Any]:
    def number(key: str) -> Optional[float]:
        raw = str(query.get(key, "") or "").strip()
        return to_float(raw, default=None) if raw else None

    return {
        "name": str(query.get("name", "") or "").strip(),
        "id": str(query.get("id", "") or "").strip(),
        "ability": str(query.get("ability", "") or "").strip(),
        "type": str(query.get("type", "") or "").strip().lower(),
        "rarity": str(query.get("rarity", "") or "").strip().lower(),
        "domain": str(query.get("domain", "") or "").strip().lower(),
        "set": str(query.get("set", "") or "").strip(),
        "priceMin": number("priceMin"),
        "priceMax": number("priceMax"),
        "energyMin": number("energyMin"),
        "energyMax": number("energyMax"),
        "mightMin": number("mightMin"),
        "mightMax": number("mightMax"),
    }


def matches_card(card: Dict[str, Any], filters: Mapping[str, Any]) -> bool:
    if not _contains(card.get("name"), filters.get("name", "")):
        return False

    price = card.get("price") if card.get("price") is not None else DEFAULT_SINGLE_PRICE
    if not _in_range(price, filters.get("priceMin"), filters.get("priceMax")):
        return False

    code = filters.get("id", "")
    if code and not (
        _contains(card.get("id"), code)
        or _contains(card.get("publicCode"), code)
        or _contains(card.get("collectorNumber"), code)
    ):
        return False

    ability = filters.get("ability", "")
    if ability:
        text = card.get("text")
        rich = text.get("richText") if isinstance(text, dict) else None
        body = rich.get("body", "") if isinstance(rich, dict) else ""
        if not _contains(strip_html(body), ability):
            return False

    if not _in_range(_nested_id(card, "energy"), filters.get("energyMin"), filters.get("energyMax")):
        return False
    if not _in_range(_nested_id(card, "might"), filters.get("mightMin"), filters.get("mightMax")):
        return False

    wanted_type = filters.get("type", "")
    if wanted_type:
        card_type = card.get("cardType") if isinstance(card.get("cardType"), dict) else {}
        types = card_type.get("type") or []
        type_id = types[0].get("id") if types and isinstance(types[0], dict) else None
        super_types = [st.get("id") for st in card_type.get("superType") or [] if isinstance(st, dict)]
        if wanted_type == "signature":
            # signature spells are spells carrying the signature supertype
            if type_id != "spell" or "signature" not in super_types:
                return False
        elif type_id != wanted_type:
            return False

    rarity = filters.get("rarity", "")
    if rarity and _nested_id(card, "rarity") != rarity:
        return False

    domain = filters.get("domain", "")
    if domain and domain not in domain_ids(card):
        return False

    card_set = filters.get("set", "")
    if card_set and _nested_id(card, "set") != card_set:
        return False

    return True


def filter_cards(cards: List[Dict[str, Any]], filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
    return [card for card in cards if matches_card(card, filters)]


class CardService:
    def __init__(
        self,
        store: BinStore,
        card_bins: Mapping[str, str],
        inventory: Optional[InventoryService] = None,
        cache_seconds: float = 3600.0,
    ):
        self.store = store
        self.card_bins = dict(card_bins)
        self.inventory = inventory
        self.cache_seconds = cache_seconds
        self._cards: Optional[List[Dict[str, Any]]] = None
        self._cached_at = 0.0

    async def _fetch_domain(self, domain: str, bin_id: str) -> Tuple[str, List[Dict[str, Any]]]:
        try:
            cards = extract_records(await self.store.fetch_bin(bin_id))
        except BinStoreError as exc:
            logger.warning(f"Failed to fetch cards for {domain}: {exc}")
            return domain, []
        return domain, cards

    async def load_cards(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        now = time.monotonic()
        if not force_refresh and self._cards is not None and now - self._cached_at < self.cache_seconds:
            logger.debug("Returning cached card data")
            return list(self._cards)

        results = await asyncio.gather(
            *(self._fetch_domain(domain, bin_id) for domain, bin_id in self.card_bins.items())
        )
        cards: List[Dict[str, Any]] = []
        for domain, domain_cards in results:
            if domain_cards:
                logger.info("Loaded %d %s cards", len(domain_cards), domain)
                cards.extend(domain_cards)

        logger.info("Total cards loaded: %d", len(cards))
        self._cards = cards
        self._cached_at = now
        return list(cards)

    async def gallery(self, filters: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        cards = await self.load_cards()
        if filters:
            cards = filter_cards(cards, filters)
        return {"page": {"cards": {"items": cards}}}

    def clear_cache(self) -> None:
        self._cards = None
        self._cached_at = 0.0

    async def fix_dual_cards(self) -> Dict[str, Any]:
        """Point master rows of dual-domain cards found in single-domain bins at the dual bin."""
        dual_bin_id = self.card_bins.get(DUAL_DOMAIN, "")
        if self.inventory is None or not dual_bin_id:
            raise ConfigurationError(
                "Missing configuration",
                details={"hasMasterBin": self.inventory is not None, "hasDualBin": bool(dual_bin_id)},
            )

        dual_card_ids = set()
        for domain, bin_id in self.card_bins.items():
            if domain == DUAL_DOMAIN:
                continue
            _, cards = await self._fetch_domain(domain, bin_id)
            for card in cards:
                if is_dual_domain(card):
                    key = record_key(card)
                    if key:
                        dual_card_ids.add(key)
                        logger.info("Found dual-domain card %s (%s) in %s bin", key, card.get("name"), domain)

        updated, inventory_size = await self.inventory.reassign_bin(dual_card_ids, dual_bin_id)
        report = {
            "dualCardsFound": len(dual_card_ids),
            "inventorySize": inventory_size,
            "updatedCount": updated,
            "dualBinId": dual_bin_id,
        }
        if not updated:
            report["message"] = "No dual-domain cards found in master inventory that need updating"
            return report

        logger.info("Dual-card repair updated %d entries", updated)
        report["success"] = True
        report["message"] = f"Successfully updated {updated} dual-domain cards"
        return report

    async def dual_entries(self) -> Dict[str, Any]:
        if self.inventory is None:
            raise ConfigurationError("MASTER_INVENTORY_BIN_ID not configured")
        inventory = await self.inventory.get_master_inventory(force_refresh=True)
        dual_bin_id = self.card_bins.get(DUAL_DOMAIN, "")
        return {
            "totalItems": len(inventory),
            "totalStock": sum(max(0, to_int(row.get("stock"), default=0)) for row in inventory),
            "dualDomainEntries": [row for row in inventory if dual_bin_id and row.get("binId") == dual_bin_id],
        }
