import json
from typing import Any, Dict, List, Optional

from ..utils.errors import ValidationError
from ..utils.logger import logger
from .catalog import to_float, to_int

BASKET_KEY = "torptcg_basket"


def normalize_entry(item: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(item, dict):
        return None
    product_id = str(item.get("id") or "").strip()
    if not product_id:
        return None
    return {
        "id": product_id,
        "title": str(item.get("title") or item.get("name") or "").strip(),
        "price": to_float(item.get("price"), default=0.0),
        "image": str(item.get("image") or "").strip(),
        "quantity": to_int(item.get("quantity"), default=0),
    }


class Basket:
    """Basket entries keyed by product id, serialised as the JSON array stored under ``BASKET_KEY``."""

    def __init__(self, entries: Optional[List[Dict[str, Any]]] = None):
        self.entries: List[Dict[str, Any]] = []
        for item in entries or []:
            entry = normalize_entry(item)
            if entry is None:
                continue
            existing = self.find(entry["id"])
            if existing is not None:
                existing["quantity"] += entry["quantity"]
            else:
                self.entries.append(entry)
        self.entries = [entry for entry in self.entries if entry["quantity"] > 0]

    @classmethod
    def loads(cls, raw: Optional[str]) -> "Basket":
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error(f"Error loading basket: {exc}")
            return cls()
        return cls(data if isinstance(data, list) else [])

    def dumps(self) -> str:
        return json.dumps(self.entries)

    def find(self, product_id: str) -> Optional[Dict[str, Any]]:
        return next((entry for entry in self.entries if entry["id"] == product_id), None)

    def add_item(self, product: Dict[str, Any], quantity: int = 1) -> None:
        existing = self.find(str(product.get("id") or "").strip())
        if existing is not None:
            self.update_quantity(existing["id"], existing["quantity"] + quantity)
            return
        entry = normalize_entry({**product, "quantity": quantity})
        if entry is None:
            raise ValidationError("product id is required")
        if entry["quantity"] > 0:
            self.entries.append(entry)

    def remove_item(self, product_id: str) -> None:
        self.entries = [entry for entry in self.entries if entry["id"] != product_id]

    def update_quantity(self, product_id: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove_item(product_id)
            return
        entry = self.find(product_id)
        if entry is not None:
            entry["quantity"] = quantity

    def clear(self) -> None:
        self.entries = []

    @property
    def total_count(self) -> int:
        return sum(entry["quantity"] for entry in self.entries)

    @property
    def total_price(self) -> float:
        return sum(entry["price"] * entry["quantity"] for entry in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)
