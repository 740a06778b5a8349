from __future__ import annotations

import gzip
import logging
import os
import threading
import time
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Tuple

import requests

from grib_decoder import DecodedGrid, GridGeometry, decode
from radar_render import overlay_bounds

MRMS_BASE_URL = os.getenv("MRMS_BASE_URL", "https://mrms.ncep.noaa.gov/data/2D").rstrip("/")
RADAR_CACHE_TTL_SECONDS = float(os.getenv("RADAR_CACHE_TTL_SECONDS", "120"))
RADAR_FETCH_TIMEOUT_SECONDS = float(os.getenv("RADAR_FETCH_TIMEOUT_SECONDS", "30"))
RADAR_FETCH_RETRIES = int(os.getenv("RADAR_FETCH_RETRIES", "3"))
RADAR_FETCH_BACKOFF_SECONDS = float(os.getenv("RADAR_FETCH_BACKOFF_SECONDS", "0.4"))
RADAR_SERVE_STALE_ON_ERROR = os.getenv("RADAR_SERVE_STALE_ON_ERROR", "1").strip() == "1"
GZIP_MAGIC = b"\x1f\x8b"
USER_AGENT = "mrms-radar/0.1"
LOGGER = logging.getLogger("mrms_radar.radar_store")


class RadarIngestionError(RuntimeError):
    """Base class for MRMS ingestion failures outside the decoder."""


class RadarFetchError(RadarIngestionError):
    """Raised when a product file cannot be downloaded or decompressed."""


@dataclass(frozen=True)
class ProductMeta:
    product_id: str
    display_name: str
    url: str
    description: str
    unit: str = "dBZ"


@dataclass(frozen=True)
class CacheEntry:
    product_id: str
    grid: DecodedGrid
    fetched_at: float
    fetched_at_utc: datetime

    @property
    def geometry(self) -> GridGeometry:
        return self.grid.geometry


DEFAULT_PRODUCTS: Tuple[ProductMeta, ...] = (
    ProductMeta(
        product_id="rala",
        display_name="Reflectivity at Lowest Altitude",
        url=f"{MRMS_BASE_URL}/ReflectivityAtLowestAltitude/MRMS_ReflectivityAtLowestAltitude.latest.grib2.gz",
        description="Radar reflectivity closest to ground level",
    ),
    ProductMeta(
        product_id="composite",
        display_name="Composite Reflectivity",
        url=f"{MRMS_BASE_URL}/MergedReflectivityQCComposite/MRMS_MergedReflectivityQCComposite.latest.grib2.gz",
        description="Maximum reflectivity across all altitudes",
    ),
    ProductMeta(
        product_id="precip_rate",
        display_name="Precipitation Rate",
        url=f"{MRMS_BASE_URL}/PrecipRate/MRMS_PrecipRate.latest.grib2.gz",
        description="Current precipitation rate (mm/hr)",
        unit="mm/hr",
    ),
    ProductMeta(
        product_id="echo_tops",
        display_name="Echo Tops",
        url=f"{MRMS_BASE_URL}/EchoTop_18/MRMS_EchoTop_18.latest.grib2.gz",
        description="Height of storm tops (18 dBZ threshold)",
        unit="km",
    ),
)


def maybe_gunzip(payload: bytes) -> bytes:
    if payload[:2] != GZIP_MAGIC:
        return payload
    try:
        return gzip.decompress(payload)
    except (OSError, EOFError, zlib.error) as exc:
        raise RadarFetchError(f"gzip decompression failed: {exc}") from exc


class HttpProductFetcher:
    """Downloads `.grib2.gz` product files and returns decompressed bytes."""

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)

    def __call__(self, product: ProductMeta) -> bytes:
        last_exc: Exception | None = None
        for attempt in range(1, RADAR_FETCH_RETRIES + 1):
            try:
                LOGGER.info("Fetching product=%s url=%s attempt=%d", product.product_id, product.url, attempt)
                response = self._session.get(product.url, timeout=RADAR_FETCH_TIMEOUT_SECONDS)
                response.raise_for_status()
                payload = response.content
                LOGGER.info("Downloaded product=%s bytes=%d", product.product_id, len(payload))
                data = maybe_gunzip(payload)
                LOGGER.info("Decompressed product=%s bytes=%d", product.product_id, len(data))
                return data
            except requests.RequestException as exc:
                last_exc = exc
                LOGGER.warning("Fetch failed product=%s attempt=%d: %s", product.product_id, attempt, exc)
                if attempt >= RADAR_FETCH_RETRIES:
                    break
                time.sleep(RADAR_FETCH_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise RadarFetchError(
            f"MRMS fetch failed for product={product.product_id} after {RADAR_FETCH_RETRIES} attempts: {last_exc}"
        ) from last_exc

    def close(self) -> None:
        self._session.close()


class RadarStore:
    """Per-product cache of decoded MRMS grids with single-flight refresh.

    An entry is served unchanged while younger than the freshness window.
    Past the window, the first caller refreshes under the product's key lock;
    concurrent callers block on the same lock and receive the new entry.
    A failed refresh never replaces the previous entry.
    """

    def __init__(
        self,
        products: Tuple[ProductMeta, ...] | List[ProductMeta] | None = None,
        fetcher: Callable[[ProductMeta], bytes] | None = None,
        clock: Callable[[], float] = time.monotonic,
        freshness_seconds: float = RADAR_CACHE_TTL_SECONDS,
        serve_stale_on_error: bool = RADAR_SERVE_STALE_ON_ERROR,
    ) -> None:
        self._products: Dict[str, ProductMeta] = {
            meta.product_id: meta for meta in (products if products is not None else DEFAULT_PRODUCTS)
        }
        self._fetcher = fetcher if fetcher is not None else HttpProductFetcher()
        self._clock = clock
        self._freshness_seconds = float(freshness_seconds)
        self._serve_stale_on_error = bool(serve_stale_on_error)

        self._entries: Dict[str, CacheEntry] = {}
        self._entries_guard = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._fetch_counts: Dict[str, int] = {}
        self._last_errors: Dict[str, str] = {}

    @property
    def freshness_seconds(self) -> float:
        return self._freshness_seconds

    @property
    def product_metas(self) -> List[ProductMeta]:
        return list(self._products.values())

    def product_meta(self, product_id: str) -> ProductMeta:
        meta = self._products.get(product_id)
        if meta is None:
            raise ValueError(f"Unknown product: {product_id}")
        return meta

    def close(self) -> None:
        close_fn = getattr(self._fetcher, "close", None)
        if callable(close_fn):
            close_fn()
        LOGGER.info("Radar store closed")

    def get_cached_entry(self, product_id: str) -> CacheEntry | None:
        self.product_meta(product_id)
        with self._entries_guard:
            return self._entries.get(product_id)

    def get_entry(self, product_id: str) -> CacheEntry:
        product = self.product_meta(product_id)
        entry = self._fresh_entry(product_id)
        if entry is not None:
            LOGGER.debug("Cache hit product=%s", product_id)
            return entry

        key_lock = self._get_key_lock(product_id)
        with key_lock:
            entry = self._fresh_entry(product_id)
            if entry is not None:
                LOGGER.debug("Cache hit after wait product=%s", product_id)
                return entry

            LOGGER.info("Cache miss product=%s; refreshing", product_id)
            try:
                entry = self._refresh(product)
            except RuntimeError as exc:
                with self._entries_guard:
                    self._last_errors[product_id] = f"{type(exc).__name__}: {exc}"
                    stale = self._entries.get(product_id)
                if stale is None or not self._serve_stale_on_error:
                    raise
                LOGGER.warning(
                    "Refresh failed product=%s; serving stale entry age=%.1fs: %s",
                    product_id,
                    self._clock() - stale.fetched_at,
                    exc,
                )
                return stale
            return entry

    def get_grid(self, product_id: str) -> DecodedGrid:
        return self.get_entry(product_id).grid

    def metadata(self, product_id: str) -> Dict[str, object]:
        return entry_metadata(self.get_entry(product_id))

    def cache_status(self) -> List[Dict[str, object]]:
        now = self._clock()
        with self._entries_guard:
            entries = dict(self._entries)
            fetch_counts = dict(self._fetch_counts)
            last_errors = dict(self._last_errors)
        status: List[Dict[str, object]] = []
        for product_id in self._products:
            entry = entries.get(product_id)
            age = (now - entry.fetched_at) if entry is not None else None
            status.append(
                {
                    "product": product_id,
                    "cached": entry is not None,
                    "fresh": age is not None and age < self._freshness_seconds,
                    "age_seconds": round(age, 1) if age is not None else None,
                    "timestamp": _isoformat(entry.grid.reference_time) if entry is not None else None,
                    "fetched_at": _isoformat(entry.fetched_at_utc) if entry is not None else None,
                    "fetch_count": fetch_counts.get(product_id, 0),
                    "last_error": last_errors.get(product_id),
                }
            )
        return status

    def _fresh_entry(self, product_id: str) -> CacheEntry | None:
        with self._entries_guard:
            entry = self._entries.get(product_id)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at < self._freshness_seconds:
            return entry
        return None

    def _refresh(self, product: ProductMeta) -> CacheEntry:
        started = self._clock()
        with self._entries_guard:
            self._fetch_counts[product.product_id] = self._fetch_counts.get(product.product_id, 0) + 1
        payload = self._fetcher(product)
        grid = decode(payload, product.product_id)
        entry = CacheEntry(
            product_id=product.product_id,
            grid=grid,
            fetched_at=started,
            fetched_at_utc=datetime.now(timezone.utc),
        )
        with self._entries_guard:
            self._entries[product.product_id] = entry
            self._last_errors.pop(product.product_id, None)
        LOGGER.info(
            "Cached product=%s grid=%dx%d valid=%d time=%s",
            product.product_id,
            grid.geometry.points_x,
            grid.geometry.points_y,
            grid.valid_count,
            _isoformat(grid.reference_time),
        )
        return entry

    def _get_key_lock(self, product_id: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(product_id)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[product_id] = lock
            return lock


def entry_metadata(entry: CacheEntry) -> Dict[str, object]:
    geometry = entry.geometry
    return {
        "timestamp": _isoformat(entry.grid.reference_time),
        "points_x": geometry.points_x,
        "points_y": geometry.points_y,
        "lat_first": geometry.lat_first,
        "lon_first": geometry.lon_first,
        "lat_last": geometry.lat_last,
        "lon_last": geometry.lon_last,
        "bounds": overlay_bounds(geometry),
    }


def _isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
