from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from backoffice.office_core.store import PRODUCTS, CollectionStore

logger = logging.getLogger(__name__)

IN_STOCK_STATUS = "Disponible"


class CatalogValidationError(ValueError):
    """Raised when catalog data does not match the expected schema."""


class Product(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    desc: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    material: Optional[str] = None
    brand: Optional[str] = None
    price: Any = None
    available: Any = None

    @field_validator("name", "desc", "category", "subcategory", "material", "brand", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else None
        if isinstance(value, (int, float)):
            return str(value) if value else None
        return str(value)

    @property
    def in_stock(self) -> bool:
        return not self.available or self.available == IN_STOCK_STATUS


def _format_validation_error(error: ValidationError, source: str) -> str:
    lines = [f"Catalog validation failed for {source}:"]
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "validation error")
        lines.append(f"- {location}: {message}")
    return "\n".join(lines)


def parse_products(raw_items: Any) -> List[Product]:
    """Lenient parse used on the request path; malformed entries are skipped."""
    if not isinstance(raw_items, list):
        return []
    products: List[Product] = []
    for index, item in enumerate(raw_items):
        if not isinstance(item, dict):
            logger.warning("Skipping catalog entry #%s: expected object, got %s", index, type(item).__name__)
            continue
        try:
            products.append(Product.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping catalog entry #%s: %s", index, exc)
    return products


def validate_products(raw_items: Any, source: str) -> List[Dict[str, Any]]:
    """Strict parse used by the importer; any bad entry fails the whole file."""
    if isinstance(raw_items, dict) and "products" in raw_items:
        raw_items = raw_items["products"]
    if not isinstance(raw_items, list):
        raise CatalogValidationError(
            f"Catalog at {source} must be a list of products or a mapping with top-level key 'products'."
        )
    validated: List[Dict[str, Any]] = []
    for index, item in enumerate(raw_items):
        if not isinstance(item, dict):
            raise CatalogValidationError(f"Catalog at {source}: entry #{index} is not an object.")
        try:
            product = Product.model_validate(item)
        except ValidationError as exc:
            raise CatalogValidationError(_format_validation_error(exc, source)) from exc
        if not product.name:
            raise CatalogValidationError(f"Catalog at {source}: entry #{index} has no name.")
        validated.append(item)
    return validated


def load_catalog_file(path: Path) -> List[Dict[str, Any]]:
    with path.open("r", encoding="utf-8") as fh:
        try:
            if path.suffix.lower() in {".yaml", ".yml"}:
                data = yaml.safe_load(fh)
            else:
                data = json.load(fh)
        except (yaml.YAMLError, ValueError) as exc:
            raise CatalogValidationError(f"Catalog at {path} could not be parsed: {exc}") from exc
    return validate_products(data, str(path))


def load_products(store: CollectionStore) -> List[Product]:
    return parse_products(store.read(PRODUCTS))
