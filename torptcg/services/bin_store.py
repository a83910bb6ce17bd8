import asyncio
import json
import re
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import aiohttp

from ..utils.config import Settings
from ..utils.errors import BinStoreError
from ..utils.logger import logger


class BinStore:
    """Cached access to JSON documents ("bins") addressed by an opaque id."""

    def __init__(self, cache_seconds: float = 300.0):
        self.cache_seconds = cache_seconds
        self._cache: Dict[str, Tuple[float, Any]] = {}

    async def fetch_bin(self, bin_id: str, force_refresh: bool = False) -> Any:
        if not bin_id:
            raise BinStoreError("bin id is required", bin_id=bin_id)

        if not force_refresh:
            cached = self._cache.get(bin_id)
            if cached is not None and time.monotonic() - cached[0] < self.cache_seconds:
                logger.debug("Bin cache hit for %s", bin_id)
                return self._copy(cached[1])

        logger.debug("Fetching bin %s", bin_id)
        record = await self._read(bin_id)
        self._cache[bin_id] = (time.monotonic(), self._copy(record))
        return record

    async def update_bin(self, bin_id: str, data: Any) -> Any:
        if not bin_id:
            raise BinStoreError("bin id is required", bin_id=bin_id)
        result = await self._write(bin_id, data)
        self._cache[bin_id] = (time.monotonic(), self._copy(data))
        return result

    def clear_cache(self, bin_id: Optional[str] = None) -> None:
        if bin_id:
            self._cache.pop(bin_id, None)
            logger.debug("Bin cache cleared for %s", bin_id)
        else:
            self._cache.clear()
            logger.debug("Bin cache cleared")

    async def close(self) -> None:
        return None

    async def _read(self, bin_id: str) -> Any:
        raise NotImplementedError

    async def _write(self, bin_id: str, data: Any) -> Any:
        raise NotImplementedError

    @staticmethod
    def _copy(value: Any) -> Any:
        return json.loads(json.dumps(value))


class JsonBinStore(BinStore):
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.jsonbin.io/v3",
        key_header: str = "X-Access-Key",
        timeout_seconds: float = 15.0,
        max_retries: int = 0,
        cache_seconds: float = 300.0,
    ):
        super().__init__(cache_seconds=cache_seconds)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.key_header = key_header
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "JsonBinStore":
        return cls(
            api_key=settings.jsonbin_api_key,
            base_url=settings.jsonbin_api_url,
            key_header=settings.jsonbin_key_header,
            timeout_seconds=settings.jsonbin_timeout_seconds,
            max_retries=settings.jsonbin_max_retries,
            cache_seconds=settings.bin_cache_seconds,
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _read(self, bin_id: str) -> Any:
        payload = await self._request("GET", bin_id)
        if isinstance(payload, dict) and "record" in payload:
            return payload["record"]
        return payload

    async def _write(self, bin_id: str, data: Any) -> Any:
        payload = await self._request("PUT", bin_id, data)
        if isinstance(payload, dict) and "record" in payload:
            return payload["record"]
        return payload

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def _build_headers(self, with_body: bool) -> Dict[str, str]:
        headers = {self.key_header: self.api_key}
        if with_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def _request(self, method: str, bin_id: str, data: Any = None) -> Any:
        url = f"{self.base_url}/b/{bin_id}"
        kwargs: Dict[str, Any] = {"headers": self._build_headers(data is not None)}
        if data is not None:
            kwargs["data"] = json.dumps(data)

        session = self._get_session()
        retries = max(0, self.max_retries)
        try:
            for attempt in range(retries + 1):
                async with session.request(method, url, **kwargs) as response:
                    body = await response.text()

                    if response.status in (429, 502, 503, 504) and attempt < retries:
                        retry_after = self._to_float(response.headers.get("Retry-After"), default=0.5)
                        logger.warning(
                            "JSONBin %s %s answered %s, retrying in %.1fs",
                            method,
                            bin_id,
                            response.status,
                            retry_after,
                        )
                        await asyncio.sleep(min(max(retry_after, 0.2), 5.0))
                        continue

                    if response.status < 200 or response.status >= 300:
                        logger.error(f"JSONBin error {response.status} on {method} {bin_id}: {body[:300]}")
                        raise BinStoreError(
                            f"{method} bin {bin_id} failed: HTTP {response.status}",
                            bin_id=bin_id,
                            upstream_status=response.status,
                        )

                    if not body:
                        return {}
                    try:
                        return json.loads(body)
                    except json.JSONDecodeError as exc:
                        raise BinStoreError(f"Failed to parse bin {bin_id}: {exc}", bin_id=bin_id) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error(f"JSONBin request failed ({method} {bin_id}): {exc}")
            raise BinStoreError(f"{method} bin {bin_id} failed: {exc}", bin_id=bin_id) from exc

        raise BinStoreError(f"{method} bin {bin_id} failed after retries", bin_id=bin_id)

    @staticmethod
    def _to_float(value: Any, default: float) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return default


class LocalBinStore(BinStore):
    """Bins kept as JSON files in a directory, one ``bin_<id>.json`` per bin."""

    _SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")

    def __init__(self, data_dir: Path, cache_seconds: float = 0.0):
        super().__init__(cache_seconds=cache_seconds)
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _bin_file(self, bin_id: str) -> Path:
        if not self._SAFE_ID.match(bin_id):
            raise BinStoreError(f"invalid bin id {bin_id!r}", bin_id=bin_id, upstream_status=400)
        return self.data_dir / f"bin_{bin_id}.json"

    async def _read(self, bin_id: str) -> Any:
        path = self._bin_file(bin_id)
        if not path.exists():
            raise BinStoreError(f"bin {bin_id} not found", bin_id=bin_id, upstream_status=404)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise BinStoreError(f"Failed to parse bin {bin_id}: {exc}", bin_id=bin_id) from exc

    async def _write(self, bin_id: str, data: Any) -> Any:
        self._bin_file(bin_id).write_text(json.dumps(data, indent=2), encoding="utf-8")
        return data


def create_bin_store(settings: Settings) -> BinStore:
    if settings.store_backend == "local":
        logger.info("Using local bin store in %s", settings.data_dir)
        return LocalBinStore(settings.data_dir, cache_seconds=settings.bin_cache_seconds)
    return JsonBinStore.from_settings(settings)
