from __future__ import annotations

import sys
import unicodedata
from typing import Any, Iterable, Sequence, TextIO

NO_RESULTS = "No results."

Column = tuple[str, str]  # (row key, header title)

PRODUCT_COLUMNS: list[Column] = [
    ("id", "ID"),
    ("slug", "SLUG"),
    ("name", "NAME"),
    ("price", "PRICE"),
    ("category", "CATEGORY"),
    ("serviceType", "TYPE"),
]
SELLER_COLUMNS: list[Column] = [("slug", "SLUG"), ("name", "NAME"), ("serviceType", "TYPE"), ("verified", "VERIFIED")]
OFFER_COLUMNS: list[Column] = [
    ("id", "ID"),
    ("price", "PRICE"),
    ("serviceType", "TYPE"),
    ("availability", "STATUS"),
    ("sellerId", "SELLER"),
]


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def _display_width(text: str) -> int:
    """Terminal columns taken by ``text``: wide and emoji-presentation chars count 2, marks 0."""
    width = 0
    last = 0
    for ch in text:
        if ch == "\ufe0f":
            # emoji presentation widens the preceding narrow symbol
            if last == 1:
                width += 1
                last = 2
            continue
        if unicodedata.combining(ch) or unicodedata.category(ch) in ("Mn", "Me", "Cf"):
            last = 0
            continue
        last = 2 if unicodedata.east_asian_width(ch) in ("W", "F") else 1
        width += last
    return width


def _pad(text: str, width: int) -> str:
    return text + " " * (width - _display_width(text))


def render_table(rows: Sequence[dict[str, Any]], columns: Sequence[Column]) -> list[str]:
    """
    Column widths are the max of the title and every cell in that column.
    Zero rows render as the single ``No results.`` line, never an empty table.
    """
    if not rows:
        return [NO_RESULTS]
    widths = {key: _display_width(title) for key, title in columns}
    for r in rows:
        for key, _ in columns:
            widths[key] = max(widths[key], _display_width(_cell(r.get(key))))
    lines = [
        "  ".join(_pad(title, widths[key]) for key, title in columns).rstrip(),
        "  ".join("-" * widths[key] for key, _ in columns),
    ]
    for r in rows:
        lines.append("  ".join(_pad(_cell(r.get(key)), widths[key]) for key, _ in columns).rstrip())
    return lines


def print_table(rows: Sequence[dict[str, Any]], columns: Sequence[Column], *, file: TextIO | None = None) -> None:
    out = file or sys.stdout
    for line in render_table(rows, columns):
        print(line, file=out)


def print_card(title: str, fields: Iterable[tuple[str, Any]], *, file: TextIO | None = None) -> None:
    out = file or sys.stdout
    print(title, file=out)
    for key, value in fields:
        text = _cell(value)
        if text:
            print(f"{key}: {text}", file=out)


def _service_type(obj: dict[str, Any]) -> str:
    st = obj.get("serviceType") or "global"
    icon = {"global": "🌍", "national": "🏳️"}.get(st, "📍")
    return f"{icon} {st}"


def _money(value: Any, display: Any = None) -> str:
    if value not in (None, ""):
        return f"${value}"
    return _cell(display)


def pick_product_fields(p: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": p.get("productId") if p.get("productId") is not None else p.get("id", ""),
        "slug": p.get("slug", ""),
        "name": p.get("name") or p.get("title") or "",
        "category": p.get("category", ""),
        "price": _money(p.get("price"), p.get("priceDisplay")),
        "buyUrl": p.get("buyUrl", ""),
        "serviceType": _service_type(p),
        "serviceCity": p.get("serviceCity", ""),
        "serviceCountry": p.get("serviceCountry", ""),
    }


def pick_seller_fields(s: dict[str, Any]) -> dict[str, Any]:
    tier = s.get("subscriptionTier") or "free"
    tier_icon = {"premium": "★", "basic": "●"}.get(tier, "○")
    return {
        "id": s.get("id", ""),
        "slug": s.get("slug", ""),
        "name": s.get("name", ""),
        "verified": "✓" if s.get("verified") else "",
        "badges": s.get("badges") if isinstance(s.get("badges"), list) else "",
        "status": s.get("status", ""),
        "serviceType": _service_type(s),
        "tier": f"{tier_icon} {tier}",
        "baseCity": s.get("baseCity", ""),
        "baseCountry": s.get("baseCountry", ""),
    }


def pick_offer_fields(o: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": o.get("id", ""),
        "productId": o.get("productId", ""),
        "sellerId": o.get("sellerId", ""),
        "price": o.get("priceDisplay") or _money(o.get("price")),
        "availability": o.get("availability", ""),
        "buyUrl": o.get("buyUrl", ""),
        "serviceType": _service_type(o),
    }


def pick_cart_item_fields(item: dict[str, Any]) -> dict[str, Any]:
    product = item.get("product") if isinstance(item.get("product"), dict) else {}
    return {
        "id": item.get("id", ""),
        "product": product.get("name") or item.get("productName") or item.get("productId", ""),
        "quantity": item.get("quantity", 1),
        "price": _money(product.get("price") or item.get("price")),
    }


def pick_order_fields(o: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": o.get("id", ""),
        "status": o.get("status", ""),
        "total": _money(o.get("total") or o.get("amount")),
        "createdAt": o.get("createdAt", ""),
    }


def pick_review_fields(r: dict[str, Any]) -> dict[str, Any]:
    rating = r.get("rating")
    stars = "★" * int(rating) + "☆" * (5 - int(rating)) if isinstance(rating, int) and 0 <= rating <= 5 else _cell(rating)
    return {
        "rating": stars,
        "author": r.get("userName") or r.get("author") or "",
        "comment": r.get("comment", ""),
        "createdAt": r.get("createdAt", ""),
    }


def pick_ai_model_fields(m: dict[str, Any]) -> dict[str, Any]:
    return {
        "slug": m.get("slug") or m.get("id", ""),
        "name": m.get("name", ""),
        "type": m.get("type", "model"),
        "credits": m.get("creditsPerRun", m.get("credits", "")),
    }


def pick_watch_rule_fields(w: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": w.get("id", ""),
        "name": w.get("name", ""),
        "query": w.get("query", ""),
        "notify": w.get("notifyChannel") or w.get("notify", ""),
        "interval": w.get("intervalMinutes", ""),
        "status": "paused" if w.get("paused") or w.get("status") == "paused" else (w.get("status") or "active"),
    }


def pick_subscription_fields(s: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": s.get("id", ""),
        "product": s.get("productName") or s.get("productId", ""),
        "frequency": s.get("frequency", ""),
        "status": s.get("status", ""),
        "nextDelivery": s.get("nextDeliveryAt") or s.get("nextDelivery", ""),
    }


def pick_wishlist_fields(w: dict[str, Any]) -> dict[str, Any]:
    product = w.get("product") if isinstance(w.get("product"), dict) else {}
    return {
        "id": product.get("id") or w.get("productId", ""),
        "name": product.get("name", ""),
        "price": _money(product.get("price")),
        "addedAt": w.get("createdAt", ""),
    }


def pick_webhook_fields(h: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": h.get("id", ""),
        "url": h.get("url", ""),
        "events": h.get("events") if isinstance(h.get("events"), list) else "",
        "active": "yes" if h.get("active", True) else "no",
    }


def pick_request_fields(r: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": r.get("id", ""),
        "title": r.get("title", ""),
        "budget": _money(r.get("budget")),
        "status": r.get("status", ""),
        "proposals": r.get("proposalCount", ""),
    }


def pick_vacancy_fields(v: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": v.get("id", ""),
        "title": v.get("title", ""),
        "company": v.get("company") or v.get("storeName", ""),
        "location": v.get("location") or ("remote" if v.get("remote") else ""),
        "salary": v.get("salary", ""),
    }


def pick_library_fields(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": item.get("id", ""),
        "name": item.get("name") or item.get("productName", ""),
        "file": item.get("fileName", ""),
        "purchasedAt": item.get("purchasedAt") or item.get("createdAt", ""),
    }
