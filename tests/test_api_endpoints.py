import unittest
from contextlib import contextmanager
from datetime import datetime, timezone

try:
    import app as app_module
    from fastapi.testclient import TestClient
except ModuleNotFoundError:
    app_module = None

from grib_decoder import TruncatedData, decode
from radar_store import CacheEntry, ProductMeta, RadarFetchError
from grib_builder import build_message

_PRODUCT_METAS = [
    ProductMeta(
        product_id="rala",
        display_name="Reflectivity at Lowest Altitude",
        url="http://example.invalid/rala.grib2.gz",
        description="Radar reflectivity closest to ground level",
    ),
]


def _entry() -> CacheEntry:
    message = build_message(
        3, 2, packed=[0, 70, 100, 220, 300, 500], bit_width=10, reference_value=-30.0, decimal_scale=1
    )
    grid = decode(message)
    return CacheEntry(
        product_id="rala",
        grid=grid,
        fetched_at=0.0,
        fetched_at_utc=datetime(2026, 10, 19, 14, 31, tzinfo=timezone.utc),
    )


class _FakeStore:
    product_metas = _PRODUCT_METAS
    freshness_seconds = 120.0

    def __init__(self) -> None:
        self.get_entry_calls = []
        self.entry = _entry()

    def get_entry(self, product_id):
        self.get_entry_calls.append(product_id)
        if product_id != "rala":
            raise ValueError(f"Unknown product: {product_id}")
        return self.entry

    def cache_status(self):
        return [{"product": "rala", "cached": True, "fresh": True}]


class _FetchFailStore(_FakeStore):
    def get_entry(self, product_id):
        raise RadarFetchError("MRMS fetch failed for product=rala after 3 attempts: 503")


class _DecodeFailStore(_FakeStore):
    def get_entry(self, product_id):
        raise TruncatedData("9 values of 10 bits need 12 bytes, payload has 11")


@contextmanager
def _serving(radar_store):
    previous = app_module.app.state.store
    app_module.app.state.store = radar_store
    try:
        yield
    finally:
        app_module.app.state.store = previous


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiEndpointTests(unittest.TestCase):
    def test_products_lists_registry(self):
        with _serving(_FakeStore()):
            payload = app_module.products()
        self.assertEqual(
            payload["products"],
            [
                {
                    "id": "rala",
                    "name": "Reflectivity at Lowest Altitude",
                    "description": "Radar reflectivity closest to ground level",
                    "unit": "dBZ",
                }
            ],
        )

    def test_latest_returns_metadata_and_bounds(self):
        fake_store = _FakeStore()
        with _serving(fake_store):
            payload = app_module.radar_latest(product="rala")

        self.assertEqual(fake_store.get_entry_calls, ["rala"])
        self.assertEqual(payload["product"], "rala")
        self.assertEqual(payload["timestamp"], "2026-10-19T14:30:40.000Z")
        metadata = payload["metadata"]
        self.assertEqual(metadata["points_x"], 3)
        self.assertEqual(metadata["points_y"], 2)
        self.assertAlmostEqual(metadata["lon_first"], 230.005, places=6)
        self.assertNotIn("bounds", metadata)
        self.assertAlmostEqual(payload["bounds"]["west"], -129.995, places=6)

    def test_latest_unknown_product_is_400(self):
        with _serving(_FakeStore()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.radar_latest(product="nope")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_latest_fetch_failure_is_503(self):
        with _serving(_FetchFailStore()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.radar_latest(product="rala")
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertTrue(ctx.exception.detail.startswith("RadarFetchError"))

    def test_image_decode_failure_is_502_with_kind(self):
        with _serving(_DecodeFailStore()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.radar_image(product="rala")
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertTrue(ctx.exception.detail.startswith("TruncatedData"))

    def test_image_endpoint_returns_png(self):
        with _serving(_FakeStore()):
            response = app_module.radar_image(product="rala")
        self.assertEqual(response.media_type, "image/png")
        self.assertTrue(response.body.startswith(b"\x89PNG"))
        self.assertEqual(response.headers["cache-control"], "public, max-age=120")
        self.assertEqual(response.headers["x-content-type-options"], "nosniff")

    def test_missing_store_is_503(self):
        with _serving(None):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.products()
        self.assertEqual(ctx.exception.status_code, 503)

    def test_legend_and_cache_status(self):
        self.assertEqual(len(app_module.legend()["bands"]), 13)
        with _serving(_FakeStore()):
            payload = app_module.cache_status()
        self.assertEqual(payload["freshness_seconds"], 120.0)
        self.assertEqual(payload["products"][0]["product"], "rala")

    def test_health(self):
        payload = app_module.health()
        self.assertEqual(payload["status"], "ok")
        self.assertIn("timestamp", payload)


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiHttpTests(unittest.TestCase):
    def setUp(self):
        # Without the context manager the client skips startup, so the installed store is kept.
        self.client = TestClient(app_module.app)

    def test_image_over_http_carries_png_and_cache_headers(self):
        with _serving(_FakeStore()):
            response = self.client.get("/api/radar/image", params={"product": "rala"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["content-type"], "image/png")
        self.assertEqual(response.headers["cache-control"], "public, max-age=120")
        self.assertEqual(response.headers["x-content-type-options"], "nosniff")
        self.assertTrue(response.content.startswith(b"\x89PNG"))

    def test_latest_over_http_defaults_to_rala(self):
        fake_store = _FakeStore()
        with _serving(fake_store):
            response = self.client.get("/api/radar/latest")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(fake_store.get_entry_calls, ["rala"])
        self.assertEqual(response.json()["timestamp"], "2026-10-19T14:30:40.000Z")

    def test_error_statuses_over_http(self):
        with _serving(_FakeStore()):
            response = self.client.get("/api/radar/latest", params={"product": "nope"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Unknown product: nope")

        with _serving(_DecodeFailStore()):
            response = self.client.get("/api/radar/image")
        self.assertEqual(response.status_code, 502)
        self.assertTrue(response.json()["detail"].startswith("TruncatedData"))

        with _serving(None):
            response = self.client.get("/api/cache")
        self.assertEqual(response.status_code, 503)


if __name__ == "__main__":
    unittest.main()
