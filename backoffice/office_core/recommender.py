from __future__ import annotations

import math
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Any, List, Optional, Pattern, Sequence

from backoffice.office_core.catalog import Product

MAX_RECOMMENDATIONS = 4
TOKEN_MATCH_POINTS = 3
NAME_MATCH_POINTS = 3
TEXT_MATCH_POINTS = 1
MAX_PRICE_BOOST = 5.0
PRICE_BOOST_DIVISOR = 1000.0
QUOTE_PRICE_TEXT = " - Precio: solicitar cotización"
# Enough digits for any finite float plus the three decimals kept.
FORMAT_PRECISION = 400


@dataclass(frozen=True)
class DomainBoost:
    pattern: Pattern[str]
    category: str
    points: float


DOMAIN_BOOSTS = (
    DomainBoost(re.compile(r"lámpara|lampara|iluminación|iluminacion|foco|bombillo"), "Electricidad", 4),
    DomainBoost(re.compile(r"tubo|agua|llave|grifo|grifería|griferia|sifón|sifon"), "Plomería", 4),
)


@dataclass(frozen=True)
class Candidate:
    product: Product
    score: float


def tokenize(text: Any) -> List[str]:
    return [word for word in str(text or "").lower().split() if word]


def _text(value: Any) -> str:
    return str(value) if value else ""


def numeric_price(value: Any) -> Optional[float]:
    """Numeric view of a price field, or None when it is missing or not a number."""
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0.0
        try:
            number = float(stripped)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def searchable_text(product: Product) -> str:
    parts = (
        product.name,
        product.desc,
        product.category,
        product.subcategory,
        product.material,
        product.brand,
    )
    return " ".join(_text(part) for part in parts).lower()


def score_product(product: Product, query: str, words: Sequence[str]) -> float:
    haystack = searchable_text(product)
    score = 0.0
    if not words:
        score += 1
    for word in words:
        if word in haystack:
            score += TOKEN_MATCH_POINTS
    for boost in DOMAIN_BOOSTS:
        if boost.pattern.search(query) and product.category == boost.category:
            score += boost.points
    price = numeric_price(product.price)
    if price is not None:
        score += min(price / PRICE_BOOST_DIVISOR, MAX_PRICE_BOOST)
    return score


def rank_candidates(query_text: Any, products: Sequence[Product]) -> List[Candidate]:
    query = str(query_text or "").lower()
    words = tokenize(query)
    candidates: List[Candidate] = []
    for product in products:
        if not product.in_stock:
            continue
        score = score_product(product, query, words)
        if score > 0:
            candidates.append(Candidate(product=product, score=score))
    # sorted() is stable, so equal scores keep catalog order.
    return sorted(candidates, key=lambda item: -item.score)


def recommend(query_text: Any, products: Sequence[Product], limit: int = MAX_RECOMMENDATIONS) -> List[Product]:
    return [item.product for item in rank_candidates(query_text, products)[:limit]]


def match_best(query_text: Any, products: Sequence[Product]) -> Optional[Product]:
    words = tokenize(query_text)
    best: Optional[Product] = None
    best_score = 0
    for product in products:
        name = _text(product.name).lower()
        haystack = f"{_text(product.name)} {_text(product.desc)}".lower()
        score = 0
        for word in words:
            if word in name:
                score += NAME_MATCH_POINTS
            if word in haystack:
                score += TEXT_MATCH_POINTS
        if score > best_score:
            best_score = score
            best = product
    return best


def format_amount(value: float) -> str:
    """Render a number the es-AR way: dot thousands, comma decimals, up to 3 decimals."""
    if math.isinf(value):
        return "-∞" if value < 0 else "∞"
    with localcontext() as ctx:
        ctx.prec = FORMAT_PRECISION
        quantized = Decimal(repr(value)).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)
        sign = "-" if quantized < 0 else ""
        integer_part, _, fraction = f"{abs(quantized):f}".partition(".")
    fraction = fraction.rstrip("0")
    grouped = f"{int(integer_part):,}".replace(",", ".")
    if fraction:
        return f"{sign}{grouped},{fraction}"
    return f"{sign}{grouped}"


def format_price_text(product: Product) -> str:
    price = numeric_price(product.price)
    if price is None:
        return QUOTE_PRICE_TEXT
    return f" - Precio aprox: ${format_amount(price)}"


def format_product_line(product: Product) -> str:
    parts = [part for part in (product.category, product.subcategory, product.material) if part]
    descriptor = f" ({' • '.join(parts)})" if parts else ""
    return f"• *{_text(product.name)}*{descriptor}{format_price_text(product)}\n"
