#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

import numpy as np

from grib_decoder import GribDecodeError, decode
from radar_render import encode_png, overlay_bounds
from radar_store import maybe_gunzip


def _summary(path: Path, grid) -> dict:
    geometry = grid.geometry
    finite = grid.values[grid.valid]
    return {
        "file": str(path),
        "timestamp": grid.reference_time.isoformat(),
        "discipline": grid.discipline,
        "points_x": geometry.points_x,
        "points_y": geometry.points_y,
        "lat_first": geometry.lat_first,
        "lon_first": geometry.lon_first,
        "lat_last": geometry.lat_last,
        "lon_last": geometry.lon_last,
        "dx": geometry.dx,
        "dy": geometry.dy,
        "bounds": overlay_bounds(geometry),
        "packing": {
            "reference_value": grid.packing.reference_value,
            "binary_scale_factor": grid.packing.binary_scale_factor,
            "decimal_scale_factor": grid.packing.decimal_scale_factor,
            "bit_width": grid.packing.bit_width,
        },
        "valid_cells": grid.valid_count,
        "min": float(np.min(finite)) if finite.size else None,
        "max": float(np.max(finite)) if finite.size else None,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Decode an MRMS GRIB2 file and print its metadata")
    parser.add_argument("path", type=Path, help="Path to a .grib2 or .grib2.gz file")
    parser.add_argument("--png", type=Path, help="Also write the reflectivity overlay to this PNG path")
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    payload = maybe_gunzip(args.path.read_bytes())
    try:
        grid = decode(payload, args.path.name)
    except GribDecodeError as exc:
        print(json.dumps({"file": str(args.path), "error": type(exc).__name__, "message": str(exc)}))
        return 1

    print(json.dumps(_summary(args.path, grid), indent=2))
    if args.png:
        args.png.write_bytes(encode_png(grid))
        print(f"wrote {args.png}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
