"""Read-only catalog of well-known REST raster services.

The catalog ships with the package and is loaded once per process. It only
feeds discovery listings; fetching never consults it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)

CATALOG_PATH = Path(__file__).resolve().parent.parent / "resources" / "rest_sources.json"
CATALOG_KEY = "REST Raster"


@dataclass(frozen=True)
class RasterSource:
    source: str
    service: str
    url: str


@lru_cache(maxsize=1)
def load_catalog() -> Tuple[RasterSource, ...]:
    payload = json.loads(CATALOG_PATH.read_text(encoding="utf-8"))
    entries: List[RasterSource] = []
    for item in payload.get(CATALOG_KEY, []):
        try:
            entries.append(
                RasterSource(
                    source=str(item["source"]),
                    service=str(item["service"]),
                    url=str(item["url"]),
                )
            )
        except (KeyError, TypeError):
            logger.warning("Skipping malformed catalog entry: %r", item)
    return tuple(entries)


def raster_sources() -> Tuple[RasterSource, ...]:
    return load_catalog()


def source_names() -> List[str]:
    names: List[str] = []
    for entry in load_catalog():
        if entry.source not in names:
            names.append(entry.source)
    return names


def services_for(source: str) -> List[RasterSource]:
    return [entry for entry in load_catalog() if entry.source == source]
