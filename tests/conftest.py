import asyncio
import copy
import hashlib
import hmac
import json

import pytest
from aiohttp import web

from torptcg.services.bin_store import BinStore
from torptcg.utils.config import Settings
from torptcg.utils.errors import BinStoreError

ENV_KEYS = (
    "JSONBIN_API_KEY",
    "JSONBIN_KEY_HEADER",
    "JSONBIN_API_URL",
    "JSONBIN_MAX_RETRIES",
    "BIN_CACHE_SECONDS",
    "CARDS_CACHE_SECONDS",
    "STORE_BACKEND",
    "STORE_DATA_DIR",
    "MASTER_INVENTORY_BIN_ID",
    "PRODUCTS_BIN_ID",
    "CALM_BIN_ID",
    "FURY_BIN_ID",
    "ORDER_BIN_ID",
    "CHAOS_BIN_ID",
    "MIND_BIN_ID",
    "BODY_BIN_ID",
    "DUAL_BIN_ID",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_API_URL",
    "STRIPE_CURRENCY",
    "SITE_URL",
    "URL",
    "ADMIN_API_KEY",
    "FRONTEND_ORIGINS",
)

CALM_CARD = {
    "id": "OGN-001",
    "publicCode": "OGN-001/298",
    "name": "Calm Rune",
    "cardImage": {"url": "https://cdn.example/ogn-001.png"},
    "domain": {"values": [{"id": "calm"}]},
    "cardType": {"type": [{"id": "unit"}], "superType": []},
    "rarity": {"value": {"id": "common"}},
    "energy": {"value": {"id": 2}},
    "might": {"value": {"id": 3}},
    "set": {"value": {"id": "OGN"}},
    "text": {"richText": {"body": "<p>When you play me, <b>draw</b> a card.</p>"}},
}

DUAL_CARD = {
    "id": "OGN-100",
    "publicCode": "OGN-100/298",
    "name": "Twin Blades",
    "price": 2.0,
    "cardImage": {"url": "https://cdn.example/ogn-100.png"},
    "domain": {"values": [{"id": "calm"}, {"id": "fury"}]},
    "cardType": {"type": [{"id": "spell"}], "superType": [{"id": "signature"}]},
    "rarity": {"value": {"id": "epic"}},
    "energy": {"value": {"id": 5}},
    "set": {"value": {"id": "OGN"}},
    "text": {"richText": {"body": "Deal 3 damage."}},
}

FURY_CARD = {
    "id": "OGN-200",
    "publicCode": "OGN-200/298",
    "name": "Fury Brawler",
    "cardImage": {"url": "https://cdn.example/ogn-200.png"},
    "domain": {"values": [{"id": "fury"}]},
    "cardType": {"type": [{"id": "unit"}], "superType": []},
    "rarity": {"value": {"id": "rare"}},
    "energy": {"value": {"id": 6}},
    "might": {"value": {"id": 6}},
    "set": {"value": {"id": "SFD"}},
}


def sample_bins():
    return {
        "master": {
            "inventory": [
                {"productId": "booster-box", "binId": "products", "category": "sealed", "stock": 3, "price": 89.99},
                {"productId": "sleeves", "binId": "products", "category": "accessories", "stock": 10},
                {"productId": "OGN-001/298", "binId": "calm", "category": "singles", "stock": 2},
                {"productId": "OGN-100", "binId": "calm", "category": "singles", "stock": 1},
                {"productId": "OGN-200", "binId": "fury", "category": "singles", "stock": 0, "preOrder": True},
            ]
        },
        "products": [
            {"id": "booster-box", "title": "Origins Booster Box", "price": 100.0, "image": "/img/box.png"},
            {"id": "sleeves", "title": "Card Sleeves", "image": "/img/sleeves.png"},
        ],
        "calm": {"page": {"cards": {"items": [copy.deepcopy(CALM_CARD), copy.deepcopy(DUAL_CARD)]}}},
        "fury": {"cards": [copy.deepcopy(FURY_CARD)]},
        "dual": {"page": {"cards": {"items": []}}},
    }


class MemoryBinStore(BinStore):
    """Bins held in a dict. ``failures`` maps a bin id to the upstream status its requests fail with."""

    def __init__(self, bins=None, cache_seconds=0.0):
        super().__init__(cache_seconds=cache_seconds)
        self.bins = copy.deepcopy(bins or {})
        self.failures = {}
        self.reads = []
        self.writes = []
        self.closed = False

    async def _read(self, bin_id):
        await asyncio.sleep(0)
        self.reads.append(bin_id)
        if bin_id in self.failures:
            raise BinStoreError(f"bin {bin_id} failed", bin_id=bin_id, upstream_status=self.failures[bin_id])
        if bin_id not in self.bins:
            raise BinStoreError(f"bin {bin_id} not found", bin_id=bin_id, upstream_status=404)
        return copy.deepcopy(self.bins[bin_id])

    async def _write(self, bin_id, data):
        await asyncio.sleep(0)
        if bin_id in self.failures:
            raise BinStoreError(f"bin {bin_id} failed", bin_id=bin_id, upstream_status=self.failures[bin_id])
        self.writes.append(bin_id)
        self.bins[bin_id] = copy.deepcopy(data)
        return data

    async def close(self):
        self.closed = True


def sign_payload(payload: bytes, secret: str, timestamp: int) -> str:
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def bins():
    return sample_bins()


@pytest.fixture
def store(bins):
    return MemoryBinStore(bins)


@pytest.fixture
def make_settings(monkeypatch, tmp_path):
    # relative STORE_DATA_DIR paths resolve inside tmp_path
    monkeypatch.chdir(tmp_path)

    def factory(**overrides):
        for key in ENV_KEYS:
            monkeypatch.delenv(key, raising=False)
        env = {
            "JSONBIN_API_KEY": "test-key",
            "MASTER_INVENTORY_BIN_ID": "master",
            "PRODUCTS_BIN_ID": "products",
            "CALM_BIN_ID": "calm",
            "FURY_BIN_ID": "fury",
            "DUAL_BIN_ID": "dual",
        }
        env.update(overrides)
        for key, value in env.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))
        return Settings()

    return factory


@pytest.fixture
def settings(make_settings):
    return make_settings()


def create_fake_jsonbin(bins, api_key="test-key", key_header="X-Access-Key"):
    app = web.Application()
    app["bins"] = bins
    app["requests"] = []
    app["fail_next"] = []

    async def handle(request: web.Request):
        bin_id = request.match_info["bin_id"]
        app["requests"].append((request.method, bin_id))
        if app["fail_next"]:
            status = app["fail_next"].pop(0)
            return web.json_response({"message": "try again"}, status=status, headers={"Retry-After": "0"})
        if request.headers.get(key_header) != api_key:
            return web.json_response({"message": "Invalid X-Access-Key"}, status=401)
        if bin_id not in app["bins"]:
            return web.json_response({"message": "Bin not found"}, status=404)
        if request.method == "PUT":
            app["bins"][bin_id] = json.loads(await request.text())
        return web.json_response({"record": app["bins"][bin_id], "metadata": {"id": bin_id}})

    app.router.add_get("/b/{bin_id}", handle)
    app.router.add_put("/b/{bin_id}", handle)
    return app


def create_fake_stripe(secret_key="sk_test_123"):
    app = web.Application()
    app["sessions"] = []

    async def create_session(request: web.Request):
        if request.headers.get("Authorization") != f"Bearer {secret_key}":
            return web.json_response({"error": {"message": "Invalid API Key provided"}}, status=401)
        form = await request.post()
        session_id = f"cs_test_{len(app['sessions']) + 1}"
        app["sessions"].append(form)
        return web.json_response({"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"})

    app.router.add_post("/checkout/sessions", create_session)
    return app


@pytest.fixture
async def fake_stripe(aiohttp_server):
    return await aiohttp_server(create_fake_stripe())


@pytest.fixture
def stripe_settings(make_settings, fake_stripe):
    return make_settings(
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_API_URL=str(fake_stripe.make_url("")),
        SITE_URL="https://shop.example",
    )
