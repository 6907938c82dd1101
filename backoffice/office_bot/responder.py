from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from backoffice.office_core.catalog import Product
from backoffice.office_core.recommender import format_product_line, match_best, recommend

GREETING_TEXT = (
    "Hola, soy tu asistente de compras de EMBAIR. Cuéntame qué necesitas y buscaré productos "
    "en el catálogo mayorista para ayudarte."
)
PANEL_CLARIFY_TEXT = (
    "Para ayudarte mejor con tableros, indícame si lo necesitas empotrado o de superficie "
    "y para cuántos módulos aproximadamente."
)
EMPTY_CATALOG_TEXT = (
    "Por ahora no tengo productos cargados en el catálogo. Intenta de nuevo más tarde "
    "o contacta directamente con un asesor."
)
NOTHING_FOUND_TEXT = (
    "Con lo que me cuentas no encontré algo claro en el catálogo. Prueba explicando qué ambiente "
    "o instalación quieres armar (por ejemplo: iluminación de sala, cambio de grifería de baño, "
    "tablero para apartamento)."
)
NO_ALTERNATIVES_TEXT = "\nSi quieres puedo buscarte alternativas similares si me das más detalles."
ALTERNATIVES_HEADER = "\n*Opciones alternativas que podrían servirte:*\n"
SUGGESTIONS_HEADER = "*Te sugiero estos productos según lo que comentas:*\n\n"
SUGGESTIONS_FOOTER = "\nSi te interesa alguno, responde con el nombre o código y te ayudo a afinar la lista."

PANEL_PATTERN = re.compile(r"tablero")
PANEL_QUALIFIER_PATTERN = re.compile(r"empotrado|superficie|m[oó]dulo|modulo")
AVAILABILITY_PATTERN = re.compile(r"disponible|tienes|tienen|hay|stock")


@dataclass(frozen=True)
class ReplyContext:
    text: str
    lower: str
    products: Sequence[Product]


@dataclass(frozen=True)
class ReplyRule:
    name: str
    applies: Callable[[ReplyContext], bool]
    respond: Callable[[ReplyContext], Optional[str]]


def build_context(message: Any, products: Optional[Sequence[Product]]) -> ReplyContext:
    text = str(message or "").strip()
    return ReplyContext(text=text, lower=text.lower(), products=list(products or []))


def _out_of_stock_reply(product: Product, products: Sequence[Product]) -> str:
    alt_query = f"{product.category or ''} {product.subcategory or ''}"
    alternatives = recommend(alt_query, products)
    reply = f"Ese producto figura como *agotado* en el catálogo: *{product.name or ''}*.\n"
    if alternatives:
        reply += ALTERNATIVES_HEADER
        reply += "".join(format_product_line(item) for item in alternatives)
    else:
        reply += NO_ALTERNATIVES_TEXT
    return reply


def _availability_reply(ctx: ReplyContext) -> Optional[str]:
    product = match_best(ctx.text, ctx.products)
    if product is None:
        return None
    if not product.in_stock:
        return _out_of_stock_reply(product, ctx.products)
    return (
        f"Sí, en el catálogo figura como *disponible*: *{product.name or ''}*.\n\n"
        "Puedes buscarlo por nombre o código en la app mayorista o indicarme si quieres "
        "que te sugiera complementos."
    )


def _suggestions_reply(ctx: ReplyContext) -> str:
    suggestions = recommend(ctx.text, ctx.products)
    if not suggestions:
        return NOTHING_FOUND_TEXT
    return SUGGESTIONS_HEADER + "".join(format_product_line(item) for item in suggestions) + SUGGESTIONS_FOOTER


# Evaluated top to bottom; a rule whose handler returns None falls through.
REPLY_RULES: List[ReplyRule] = [
    ReplyRule(
        name="greeting",
        applies=lambda ctx: not ctx.text,
        respond=lambda ctx: GREETING_TEXT,
    ),
    ReplyRule(
        name="panel_clarify",
        applies=lambda ctx: bool(PANEL_PATTERN.search(ctx.lower))
        and not PANEL_QUALIFIER_PATTERN.search(ctx.lower),
        respond=lambda ctx: PANEL_CLARIFY_TEXT,
    ),
    ReplyRule(
        name="empty_catalog",
        applies=lambda ctx: not ctx.products,
        respond=lambda ctx: EMPTY_CATALOG_TEXT,
    ),
    ReplyRule(
        name="availability",
        applies=lambda ctx: bool(AVAILABILITY_PATTERN.search(ctx.lower)),
        respond=_availability_reply,
    ),
    ReplyRule(
        name="suggestions",
        applies=lambda ctx: True,
        respond=_suggestions_reply,
    ),
]


def select_reply(ctx: ReplyContext, rules: Sequence[ReplyRule] = REPLY_RULES) -> tuple[str, str]:
    """Return (rule name, reply text) for the first rule that produces a reply."""
    for rule in rules:
        if not rule.applies(ctx):
            continue
        reply = rule.respond(ctx)
        if reply is not None:
            return rule.name, reply
    return "suggestions", _suggestions_reply(ctx)


def reply(message: Any, products: Optional[Sequence[Product]]) -> str:
    _, text = select_reply(build_context(message, products))
    return text
