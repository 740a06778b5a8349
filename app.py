from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from grib_decoder import GribDecodeError
from radar_render import encode_png, reflectivity_legend
from radar_store import RadarStore, entry_metadata

DEFAULT_PRODUCT = "rala"


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", os.getenv("RADAR_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("mrms_radar")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("RADAR_LOG_FILE", "logs/radar.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="MRMS Radar Overlay")


def _allowed_cors_origins() -> List[str]:
    if os.getenv("RADAR_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:3000",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)

# Created on startup, closed on shutdown; tests install their own store.
app.state.store = None


@app.on_event("startup")
def _startup() -> None:
    LOGGER.info("App startup")
    if app.state.store is None:
        app.state.store = RadarStore()


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    radar_store = app.state.store
    if radar_store is not None:
        radar_store.close()
        app.state.store = None


def _require_store() -> RadarStore:
    radar_store = app.state.store
    if radar_store is None:
        raise HTTPException(status_code=503, detail="Radar store not initialised")
    return radar_store


def _error_detail(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


def _get_entry(radar_store, product: str, context: str):
    try:
        return radar_store.get_entry(product)
    except ValueError as exc:
        LOGGER.warning("%s request invalid: %s", context, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except GribDecodeError as exc:
        # Upstream delivered a file we cannot decode.
        LOGGER.warning("%s request decode error product=%s: %s", context, product, _error_detail(exc))
        raise HTTPException(status_code=502, detail=_error_detail(exc)) from exc
    except RuntimeError as exc:
        LOGGER.warning("%s request runtime error product=%s: %s", context, product, _error_detail(exc))
        raise HTTPException(status_code=503, detail=_error_detail(exc)) from exc
    except Exception:
        LOGGER.exception("%s request unexpected failure product=%s", context, product)
        raise


@app.get("/api/products")
def products() -> Dict[str, object]:
    radar_store = _require_store()
    payload = [
        {
            "id": meta.product_id,
            "name": meta.display_name,
            "description": meta.description,
            "unit": meta.unit,
        }
        for meta in radar_store.product_metas
    ]
    LOGGER.debug("Products served count=%d", len(payload))
    return {"products": payload}


@app.get("/api/radar/latest")
def radar_latest(product: str = Query(DEFAULT_PRODUCT)) -> Dict[str, object]:
    entry = _get_entry(_require_store(), product, "Latest")
    metadata = entry_metadata(entry)
    bounds = metadata.pop("bounds")
    timestamp = metadata.pop("timestamp")
    return {
        "timestamp": timestamp,
        "metadata": metadata,
        "bounds": bounds,
        "product": product,
    }


@app.get("/api/radar/image")
def radar_image(product: str = Query(DEFAULT_PRODUCT)) -> Response:
    radar_store = _require_store()
    entry = _get_entry(radar_store, product, "Image")
    LOGGER.info("Rendering image product=%s grid=%dx%d", product, entry.geometry.points_x, entry.geometry.points_y)
    png = encode_png(entry.grid)
    max_age = int(radar_store.freshness_seconds)
    return Response(
        content=png,
        media_type="image/png",
        headers={
            "Cache-Control": f"public, max-age={max_age}",
            "X-Content-Type-Options": "nosniff",
        },
    )


@app.get("/api/legend")
def legend() -> Dict[str, object]:
    return {"unit": "dBZ", "bands": reflectivity_legend()}


@app.get("/api/cache")
def cache_status() -> Dict[str, object]:
    radar_store = _require_store()
    return {
        "freshness_seconds": radar_store.freshness_seconds,
        "products": radar_store.cache_status(),
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
