from __future__ import annotations

from typing import Any, Dict, List, Optional

from backoffice.office_core.campaigns import now_iso


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def upsert_catalog_file(
    items: List[Dict[str, Any]],
    *,
    title: str,
    url: str,
    item_id: Any = None,
) -> Dict[str, Any]:
    now = now_iso()
    wanted = _as_int(item_id) if item_id else None
    if wanted is not None:
        for item in items:
            if _as_int(item.get("id")) == wanted:
                item["title"] = title
                item["url"] = url
                item["updatedAt"] = now
                return item

    known_ids = [_as_int(item.get("id")) or 0 for item in items]
    new_item = {
        "id": max(known_ids) + 1 if known_ids else 1,
        "title": title,
        "url": url,
        "createdAt": now,
    }
    items.append(new_item)
    return new_item


def delete_catalog_file(items: List[Dict[str, Any]], item_id: Any) -> List[Dict[str, Any]]:
    wanted = _as_int(item_id)
    return [item for item in items if _as_int(item.get("id")) != wanted]
