import os
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv

DOMAINS = ("calm", "fury", "order", "chaos", "mind", "body")
DUAL_DOMAIN = "dual"
SINGLES_CATEGORY = "singles"
DEFAULT_SINGLE_PRICE = 0.50


class Settings:
    def __init__(self):
        load_dotenv()

        self.jsonbin_api_key = (os.getenv("JSONBIN_API_KEY") or "").strip()
        self.jsonbin_key_header = (os.getenv("JSONBIN_KEY_HEADER") or "X-Access-Key").strip() or "X-Access-Key"
        self.jsonbin_api_url = (os.getenv("JSONBIN_API_URL") or "https://api.jsonbin.io/v3").strip().rstrip("/")
        self.jsonbin_timeout_seconds = self._to_float(os.getenv("JSONBIN_TIMEOUT_SECONDS"), default=15.0)
        self.jsonbin_max_retries = self._to_int(os.getenv("JSONBIN_MAX_RETRIES"), default=0)
        self.bin_cache_seconds = self._to_float(os.getenv("BIN_CACHE_SECONDS"), default=300.0)
        self.cards_cache_seconds = self._to_float(os.getenv("CARDS_CACHE_SECONDS"), default=3600.0)

        self.store_backend = (os.getenv("STORE_BACKEND") or "jsonbin").strip().lower()
        if self.store_backend not in {"jsonbin", "local"}:
            self.store_backend = "jsonbin"
        self.data_dir = Path(os.getenv("STORE_DATA_DIR", "data"))

        self.master_inventory_bin_id = (os.getenv("MASTER_INVENTORY_BIN_ID") or "").strip()
        self.products_bin_id = (os.getenv("PRODUCTS_BIN_ID") or "").strip()
        self.domain_bins: Dict[str, str] = {}
        for domain in DOMAINS:
            bin_id = (os.getenv(f"{domain.upper()}_BIN_ID") or "").strip()
            if bin_id:
                self.domain_bins[domain] = bin_id
        self.dual_bin_id = (os.getenv("DUAL_BIN_ID") or "").strip()

        self.stripe_secret_key = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
        self.stripe_webhook_secret = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
        self.stripe_api_url = (os.getenv("STRIPE_API_URL") or "https://api.stripe.com/v1").strip().rstrip("/")
        self.stripe_currency = (os.getenv("STRIPE_CURRENCY") or "gbp").strip().lower() or "gbp"
        self.site_url = (os.getenv("SITE_URL") or os.getenv("URL") or "http://localhost:8080").strip().rstrip("/")

        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = self._to_int(os.getenv("PORT"), default=8080)
        self.admin_api_key = (os.getenv("ADMIN_API_KEY") or "").strip()
        raw_origins = (os.getenv("FRONTEND_ORIGINS") or "*").strip()
        self.allowed_origins: List[str] = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
        if not self.allowed_origins:
            self.allowed_origins = ["*"]

    @property
    def card_bins(self) -> Dict[str, str]:
        bins = dict(self.domain_bins)
        if self.dual_bin_id:
            bins[DUAL_DOMAIN] = self.dual_bin_id
        return bins

    def missing(self) -> List[str]:
        """Return the names of settings the inventory endpoints cannot run without."""
        missing = []
        if self.store_backend == "jsonbin" and not self.jsonbin_api_key:
            missing.append("JSONBIN_API_KEY")
        if not self.master_inventory_bin_id:
            missing.append("MASTER_INVENTORY_BIN_ID")
        return missing

    @staticmethod
    def _to_float(value: Any, default: float) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return default

    @staticmethod
    def _to_int(value: Any, default: int) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default
