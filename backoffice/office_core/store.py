from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

PRODUCTS = "products"
CAMPAIGNS = "campaigns"
CLIENTS = "clients"
CATALOGS = "catalogs"
CONFIG = "config"

COLLECTION_DEFAULTS: Dict[str, Any] = {
    PRODUCTS: [],
    CAMPAIGNS: [],
    CLIENTS: [],
    CATALOGS: [],
    CONFIG: {},
}


class CollectionStore:
    """Whole-document JSON persistence, one file per named collection.

    Every read returns the full collection and every write replaces it, so
    concurrent writers resolve as last-writer-wins. A missing, unreadable or
    corrupt file reads as the collection's empty default.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    def path_for(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def _default(self, name: str) -> Any:
        return copy.deepcopy(COLLECTION_DEFAULTS.get(name, []))

    def read(self, name: str) -> Any:
        default = self._default(name)
        path = self.path_for(name)
        if not path.exists():
            return default
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Could not read collection %s from %s: %s", name, path, exc)
            return default
        if not isinstance(data, type(default)):
            logger.warning(
                "Collection %s has unexpected type %s, using empty default",
                name,
                type(data).__name__,
            )
            return default
        return data

    def write(self, name: str, data: Any) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(name)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{name}-", suffix=".json", dir=str(self.data_dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, ensure_ascii=False, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
