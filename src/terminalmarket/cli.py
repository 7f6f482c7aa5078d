from __future__ import annotations

import argparse
import getpass
import logging
import os
import re
import sys
import textwrap
import webbrowser
from pathlib import Path
from typing import Any, Callable
from urllib.parse import quote

import httpx

from ._version import __version__
from .client import (
    ErrorKind,
    NotFoundError,
    TerminalMarketClient,
    TerminalMarketError,
    TerminalMarketHTTPError,
    ValidationError,
)
from .config import ConfigStore, redact
from .formatting import (
    OFFER_COLUMNS,
    PRODUCT_COLUMNS,
    SELLER_COLUMNS,
    pick_ai_model_fields,
    pick_cart_item_fields,
    pick_library_fields,
    pick_offer_fields,
    pick_order_fields,
    pick_product_fields,
    pick_request_fields,
    pick_review_fields,
    pick_seller_fields,
    pick_subscription_fields,
    pick_vacancy_fields,
    pick_watch_rule_fields,
    pick_webhook_fields,
    pick_wishlist_fields,
    print_card,
    print_table,
)
from .pipeline import filter_items, parse_head, parse_price, run_pipeline
from .watch import parse_watch_args

log = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 200
MAX_WATCH_LOGS = 100
# Global options whose value is a separate argv token.
GLOBAL_VALUE_FLAGS = ("--api", "--config")
FREQUENCIES = ("daily", "weekly", "biweekly", "monthly")
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

LOGIN_HINT = "Not logged in or session expired. Run: tm login"
CREDITS_HINT = (
    "Insufficient AI credits. Check your balance with `tm credits` "
    "and top up with `tm credits buy <package>`."
)


def _seg(value: Any) -> str:
    return quote(str(value), safe="")


def _clamp_limit(value: int | None) -> int:
    if not value:
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, int(value)))


def _as_list(data: Any, *keys: str) -> list[dict[str, Any]]:
    """Accept either a bare JSON array or an object wrapping one under ``keys``."""
    if isinstance(data, dict):
        for k in keys:
            if isinstance(data.get(k), list):
                data = data[k]
                break
    if not isinstance(data, list):
        return []
    return [x for x in data if isinstance(x, dict)]


def _truthy_env(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def _open_browser(url: str) -> None:
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as e:
        log.debug("browser open failed: %s", e)
        opened = False
    if not opened:
        print("Could not open a browser; copy the URL above.", file=sys.stderr)


def _should_open(args: argparse.Namespace) -> bool:
    return not getattr(args, "no_open", False) and not _truthy_env("TERMINALMARKET_NO_OPEN")


def _get_or_none(client: TerminalMarketClient, path: str) -> Any | None:
    try:
        data = client.get(path)
    except TerminalMarketHTTPError as e:
        if e.kind is ErrorKind.NOT_FOUND:
            return None
        raise
    return data or None


def _location_params(args: argparse.Namespace, store: ConfigStore) -> dict[str, str]:
    city = getattr(args, "city", None)
    country = getattr(args, "country", None)
    if not city and not country and not getattr(args, "anywhere", False):
        loc = store.location
        if loc:
            return {"city": loc["city"], "country": loc.get("country") or ""}
    return {"city": (city or "").strip(), "country": (country or "").strip()}


def _print_products(args: argparse.Namespace, products: list[dict[str, Any]], *, limit: int) -> None:
    """Apply --sort/--head (then --count) to products and render them."""
    head = parse_head(args.head) if args.head is not None else None
    rows = run_pipeline(products, sort=args.sort, head=head)
    if args.count:
        print(len(rows))
        return
    total = len(rows)
    if head is None:
        rows = rows[:limit]
    print_table([pick_product_fields(p) for p in rows], PRODUCT_COLUMNS)
    if len(rows) < total:
        print(f"Showing {limit} of {total}. Use --limit to show more.", file=sys.stderr)


def _check_price(value: str | None, flag: str) -> str | None:
    if value is None:
        return None
    value = value.strip()
    try:
        float(value)
    except ValueError:
        raise ValidationError(f"{flag} must be a number, got {value!r}") from None
    return value


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="tm",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="TerminalMarket CLI: the marketplace for developers.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              TERMINALMARKET_API, TERMINALMARKET_CONFIG_PATH, TERMINALMARKET_TIMEOUT_S,
              TERMINALMARKET_SESSION_COOKIE, TERMINALMARKET_NO_OPEN, TERMINALMARKET_DEBUG
            """
        ),
    )
    p.add_argument("--api", help="API base URL for this invocation (overrides config/env)")
    p.add_argument("--config", help="Path to the config file")
    p.add_argument("--debug", action="store_true", help="Log HTTP traffic to stderr")
    p.add_argument("--version", action="version", version=f"tm {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    def _add_listing_flags(parser: argparse.ArgumentParser, *, pipe: bool = True) -> None:
        parser.add_argument("-l", "--limit", type=int, default=DEFAULT_LIMIT, help="Limit results (default: 20)")
        parser.add_argument("--city", help="Filter by city (local services)")
        parser.add_argument("--country", help="Filter by country code")
        parser.add_argument("--anywhere", action="store_true", help="Ignore the saved location")
        if pipe:
            parser.add_argument("--sort", help="Sort by field; prefix with - for descending (e.g. -price)")
            parser.add_argument("--head", help="Keep only the first N results")
            parser.add_argument("--count", action="store_true", help="Print only the number of results")

    # config
    cfg = sub.add_parser("config", help="Get/set CLI config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_get = cfg_sub.add_parser("get", help="Get a config value (api, cookie-name)")
    cfg_get.add_argument("key")
    cfg_set = cfg_sub.add_parser("set", help="Set a config value (api, cookie-name)")
    cfg_set.add_argument("key")
    cfg_set.add_argument("value")
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (session redacted)")

    # location
    loc = sub.add_parser("location", help="Saved location used to filter local listings")
    loc_sub = loc.add_subparsers(dest="subcmd", required=True)
    loc_set = loc_sub.add_parser("set", help="Save your city")
    loc_set.add_argument("city")
    loc_set.add_argument("--country", help="Country code, e.g. DE")
    loc_sub.add_parser("show", help="Show the saved location")
    loc_sub.add_parser("clear", help="Forget the saved location")

    # session
    login = sub.add_parser("login", help="Log in (password is prompted)")
    login.add_argument("--email")
    register = sub.add_parser("register", help="Create an account (password is prompted)")
    register.add_argument("--email")
    register.add_argument("--name")
    sub.add_parser("logout", help="Log out and clear the local session")
    sub.add_parser("whoami", help="Show the logged-in user")

    profile = sub.add_parser("profile", help="Your profile")
    profile_sub = profile.add_subparsers(dest="subcmd", required=True)
    profile_upd = profile_sub.add_parser("update", help="Update profile fields")
    profile_upd.add_argument("--name")
    profile_upd.add_argument("--email")
    profile_upd.add_argument("--city")
    profile_upd.add_argument("--country")

    # catalog
    sub.add_parser("categories", help="List categories")

    products = sub.add_parser("products", help="List products")
    _add_listing_flags(products)
    products.add_argument("-c", "--category", help="Filter by category")

    category = sub.add_parser("category", help="List products in a category")
    category.add_argument("category")
    _add_listing_flags(category)

    search = sub.add_parser("search", help="Search products")
    search.add_argument("query")
    _add_listing_flags(search)
    search.add_argument("-c", "--category", help="Filter by category")
    search.add_argument("--price-min", help="Minimum price")
    search.add_argument("--price-max", help="Maximum price")

    view = sub.add_parser("view", help="View a product by ID or slug")
    view.add_argument("product")

    buy = sub.add_parser("buy", help="Create an intent and open the product checkout URL")
    buy.add_argument("product", help="Product ID or slug")
    buy.add_argument("--offer", help="Buy a specific offer")
    buy.add_argument("--no-open", action="store_true", help="Do not open a browser")

    sellers = sub.add_parser("sellers", help="List verified sellers")
    _add_listing_flags(sellers, pipe=False)
    sellers.add_argument("--all", action="store_true", help="Show all sellers (not just verified)")

    seller = sub.add_parser("seller", help="View seller details")
    seller.add_argument("slug")

    offers = sub.add_parser("offers", help="List offers")
    offers.add_argument("-p", "--product", help="Filter by product ID")
    offers.add_argument("-s", "--seller", help="Filter by seller ID")
    offers.add_argument("-l", "--limit", type=int, default=DEFAULT_LIMIT)

    sub.add_parser("about", help="About TerminalMarket")

    # cart / orders
    cart = sub.add_parser("cart", help="Shopping cart")
    cart_sub = cart.add_subparsers(dest="subcmd")
    cart_sub.add_parser("list", help="Show the cart (default)")
    cart_add = cart_sub.add_parser("add", help="Add a product")
    cart_add.add_argument("product_id")
    cart_add.add_argument("--qty", type=int, default=1)
    cart_rm = cart_sub.add_parser("remove", help="Remove a cart item")
    cart_rm.add_argument("item_id")
    cart_sub.add_parser("clear", help="Empty the cart")

    sub.add_parser("orders", help="List your orders")

    # reviews
    reviews = sub.add_parser("reviews", help="List reviews for a store")
    reviews.add_argument("store_id")
    review = sub.add_parser("review", help="Review a store")
    review.add_argument("store_id")
    review.add_argument("--rating", type=int, required=True, help="1..5")
    review.add_argument("--comment", default="")
    rating = sub.add_parser("rating", help="Show a store's average rating")
    rating.add_argument("store_id")

    # ai / credits
    ai = sub.add_parser("ai", help="AI models and agents (billed in credits)")
    ai_sub = ai.add_subparsers(dest="subcmd", required=True)
    ai_sub.add_parser("models", help="List AI models and agents")
    ai_run = ai_sub.add_parser("run", help="Run a model once")
    ai_run.add_argument("model")
    ai_run.add_argument("input", nargs="+")
    ai_chat = ai_sub.add_parser("chat", help="Interactive chat (type 'exit' to quit)")
    ai_chat.add_argument("model")

    credits = sub.add_parser("credits", help="AI credit balance and packages")
    credits_sub = credits.add_subparsers(dest="subcmd")
    credits_sub.add_parser("balance", help="Show balance (default)")
    credits_sub.add_parser("packages", help="List credit packages")
    credits_buy = credits_sub.add_parser("buy", help="Buy a credit package")
    credits_buy.add_argument("package_id")
    credits_buy.add_argument("--no-open", action="store_true")

    # watch rules
    watch = sub.add_parser("watch", help="Server-side recurring queries with notifications")
    watch_sub = watch.add_subparsers(dest="subcmd", required=True)
    watch_sub.add_parser(
        "create",
        help="Create a rule: tm watch create <query...> [--notify CH] [--interval MIN] [--action A] [--name N]",
    )
    watch_sub.add_parser("list", help="List rules")
    for name, help_text in (("pause", "Pause a rule"), ("resume", "Resume a rule"), ("delete", "Delete a rule")):
        w = watch_sub.add_parser(name, help=help_text)
        w.add_argument("rule_id")
    watch_logs = watch_sub.add_parser("logs", help="Recent evaluations of a rule")
    watch_logs.add_argument("rule_id")
    watch_logs.add_argument("-l", "--limit", type=int, default=DEFAULT_LIMIT)

    # wishlist
    wishlist = sub.add_parser("wishlist", help="Saved products")
    wl_sub = wishlist.add_subparsers(dest="subcmd")
    wl_sub.add_parser("list")
    wl_add = wl_sub.add_parser("add")
    wl_add.add_argument("product_id")
    wl_rm = wl_sub.add_parser("remove")
    wl_rm.add_argument("product_id")

    # subscriptions
    subs = sub.add_parser("subscriptions", help="Recurring orders")
    subs_sub = subs.add_subparsers(dest="subcmd")
    subs_sub.add_parser("list")
    subs_create = subs_sub.add_parser("create", help="Subscribe to a product")
    subs_create.add_argument("product_id")
    subs_create.add_argument("--frequency", required=True, help="daily, weekly, biweekly or monthly")
    subs_create.add_argument("--day", help="Delivery weekday for weekly plans (mon..sun)")
    subs_cancel = subs_sub.add_parser("cancel")
    subs_cancel.add_argument("subscription_id")

    # webhooks
    hooks = sub.add_parser("webhooks", help="Your webhook endpoints")
    hooks_sub = hooks.add_subparsers(dest="subcmd")
    hooks_sub.add_parser("list")
    hooks_add = hooks_sub.add_parser("add")
    hooks_add.add_argument("url")
    hooks_add.add_argument("--event", action="append", default=[], help="Event name (repeatable)")
    hooks_rm = hooks_sub.add_parser("remove")
    hooks_rm.add_argument("webhook_id")

    # buyer requests
    reqs = sub.add_parser("requests", help="Buyer requests (sellers send proposals)")
    reqs_sub = reqs.add_subparsers(dest="subcmd")
    reqs_sub.add_parser("list")
    reqs_create = reqs_sub.add_parser("create")
    reqs_create.add_argument("title")
    reqs_create.add_argument("--description", default="")
    reqs_create.add_argument("--budget")
    reqs_create.add_argument("--category")
    reqs_view = reqs_sub.add_parser("view")
    reqs_view.add_argument("request_id")

    # jobs
    jobs = sub.add_parser("jobs", help="Job board")
    jobs_sub = jobs.add_subparsers(dest="subcmd")
    jobs_sub.add_parser("list")
    jobs_view = jobs_sub.add_parser("view")
    jobs_view.add_argument("vacancy_id")
    jobs_apply = jobs_sub.add_parser("apply")
    jobs_apply.add_argument("vacancy_id")
    jobs_apply.add_argument("--message", default="")

    # library
    lib = sub.add_parser("library", help="Digital purchases")
    lib_sub = lib.add_subparsers(dest="subcmd")
    lib_sub.add_parser("list")
    lib_dl = lib_sub.add_parser("download")
    lib_dl.add_argument("item_id")
    lib_dl.add_argument("-o", "--output", help="Destination file (default: ./library-<id>)")

    sub.add_parser("rewards", help="Reward points and tier")

    return p


# config / location


def cmd_config(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    store = client.store
    if args.subcmd == "path":
        print(str(store.path))
        return 0

    if args.subcmd == "show":
        d = store.as_dict()
        d["apiBase"] = client.api_base
        for k in ("sessionCookie", "csrfToken"):
            if k in d:
                d[k] = redact(d[k])
        for k, v in sorted(d.items()):
            print(f"{k}: {v}")
        return 0

    if args.subcmd == "get":
        if args.key == "api":
            print(client.api_base)
            return 0
        if args.key == "cookie-name":
            print(store.session_cookie_pattern)
            return 0
        raise ValidationError(f"Unknown key: {args.key}")

    if args.subcmd == "set":
        value = args.value.strip()
        if args.key == "api":
            if not value.startswith(("http://", "https://")):
                raise ValidationError("api must be an http(s) URL")
            store.api_base = value
            print(f"api = {store.api_base}")
            return 0
        if args.key == "cookie-name":
            try:
                re.compile(value)
            except re.error as e:
                raise ValidationError(f"cookie-name is not a valid pattern: {e}") from None
            store.set("sessionCookiePattern", value)
            print(f"cookie-name = {value}")
            return 0
        raise ValidationError(f"Unknown key: {args.key}")

    raise AssertionError("unreachable")


def cmd_location(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    store = client.store
    if args.subcmd == "set":
        city = args.city.strip()
        if not city:
            raise ValidationError("City must not be empty.")
        store.location = {"city": city, "country": (args.country or "").strip().upper()}
        print(f"Location saved: {city}{', ' + store.location['country'] if store.location['country'] else ''}")
        return 0
    if args.subcmd == "show":
        loc = store.location
        if not loc:
            print("No location saved. Set one with: tm location set <city> --country <code>")
            return 0
        print(f"{loc['city']}{', ' + loc['country'] if loc['country'] else ''}")
        return 0
    if args.subcmd == "clear":
        store.location = None
        print("Location cleared.")
        return 0
    raise AssertionError("unreachable")


# session


def _prompt(label: str) -> str:
    try:
        return input(label).strip()
    except (KeyboardInterrupt, EOFError):
        print("\nCancelled.", file=sys.stderr)
        raise SystemExit(1) from None


def _prompt_password(label: str = "Password: ") -> str:
    try:
        return getpass.getpass(label)
    except (KeyboardInterrupt, EOFError):
        print("\nCancelled.", file=sys.stderr)
        raise SystemExit(1) from None


def _start_session(client: TerminalMarketClient, data: Any) -> dict[str, Any]:
    user = data.get("user") if isinstance(data, dict) and isinstance(data.get("user"), dict) else data
    if isinstance(user, dict) and user and user != {"ok": True}:
        client.store.user = user
    try:
        client.fetch_csrf_token()
    except TerminalMarketError as e:
        log.warning("could not fetch CSRF token: %s", e)
    return client.store.user or {}


def cmd_login(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    email = (args.email or _prompt("Email: ")).strip()
    if not email:
        raise ValidationError("Email is required.")
    password = _prompt_password()
    if not password:
        raise ValidationError("Password is required.")
    data = client.post("/auth/login", {"email": email, "password": password})
    user = _start_session(client, data)
    print(f"Logged in as {user.get('email') or email}")
    return 0


def cmd_register(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    email = (args.email or _prompt("Email: ")).strip()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required.")
    name = (args.name or "").strip()
    password = _prompt_password()
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters.")
    if _prompt_password("Repeat password: ") != password:
        raise ValidationError("Passwords do not match.")
    body: dict[str, Any] = {"email": email, "password": password}
    if name:
        body["name"] = name
    data = client.post("/auth/register", body)
    _start_session(client, data)
    print(f"Account created. Logged in as {email}")
    return 0


def cmd_logout(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    try:
        client.post("/auth/logout")
    except TerminalMarketError as e:
        print(f"warning: server logout failed ({e}); local session cleared anyway.", file=sys.stderr)
    finally:
        client.store.clear_session()
    print("Logged out.")
    return 0


def cmd_whoami(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    data = client.get("/auth/status")
    user = data.get("user") if isinstance(data, dict) else None
    if not isinstance(data, dict) or not data.get("authenticated") or not isinstance(user, dict):
        print("Not logged in. Run: tm login")
        return 0
    client.store.user = user
    print_card(
        user.get("name") or user.get("username") or user.get("email") or "user",
        [
            ("email", user.get("email")),
            ("id", user.get("id")),
            ("role", user.get("role")),
            ("credits", user.get("credits")),
        ],
    )
    return 0


def cmd_profile(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    body: dict[str, str] = {}
    for k in ("name", "email", "city", "country"):
        v = (getattr(args, k) or "").strip()
        if v:
            body[k] = v
    if not body:
        raise ValidationError("Nothing to update. Pass --name, --email, --city or --country.")
    data = client.patch("/profile", body)
    if isinstance(data, dict) and isinstance(data.get("user"), dict):
        client.store.user = data["user"]
    print("Profile updated.")
    return 0


# catalog


def cmd_categories(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    cats = client.get("/categories")
    rows = []
    for c in cats if isinstance(cats, list) else _as_list(cats, "categories"):
        if isinstance(c, dict):
            rows.append({"slug": c.get("slug", ""), "name": c.get("name", ""), "description": c.get("description", "")})
        else:
            rows.append({"slug": c, "name": c, "description": ""})
    print_table(rows, [("slug", "SLUG"), ("name", "NAME"), ("description", "DESCRIPTION")])
    return 0


def cmd_products(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    limit = _clamp_limit(args.limit)
    category = getattr(args, "category", None)
    path = f"/products/category/{_seg(category)}" if category else "/products"
    params = _location_params(args, client.store)
    data = client.get(path, params=params)
    _print_products(args, _as_list(data, "products"), limit=limit)
    return 0


def _search_fallback(client: TerminalMarketClient, query: str, args: argparse.Namespace) -> list[dict[str, Any]]:
    products = filter_items(_as_list(client.get("/products"), "products"), query)
    if args.category:
        products = [p for p in products if p.get("category") == args.category]
    lo = float(args.price_min) if args.price_min is not None else None
    hi = float(args.price_max) if args.price_max is not None else None
    if lo is not None or hi is not None:
        kept = []
        for p in products:
            price = parse_price(p.get("price"))
            if price is None:
                continue
            if (lo is None or price >= lo) and (hi is None or price <= hi):
                kept.append(p)
        products = kept
    return products


def cmd_search(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    query = args.query.strip()
    if not query:
        raise ValidationError("Search query must not be empty.")
    limit = _clamp_limit(args.limit)
    price_min = _check_price(args.price_min, "--price-min")
    price_max = _check_price(args.price_max, "--price-max")
    if args.head is not None:
        parse_head(args.head)

    params = {
        "q": query,
        "limit": str(limit),
        "category": args.category,
        **_location_params(args, client.store),
        "price_min": price_min,
        "price_max": price_max,
    }
    try:
        products = _as_list(client.get("/products/search", params=params), "products")
    except TerminalMarketError as e:
        log.debug("server search failed, filtering locally: %s", e)
        products = _search_fallback(client, query, args)

    _print_products(args, products, limit=limit)
    return 0


def resolve_product(client: TerminalMarketClient, ref: str) -> dict[str, Any]:
    """Look a product up by id, then by slug; any failure moves to the next lookup."""
    for path in (f"/products/{_seg(ref)}", f"/products/slug/{_seg(ref)}"):
        try:
            data = client.get(path)
        except TerminalMarketError as e:
            log.debug("product lookup %s failed: %s", path, e)
            continue
        if isinstance(data, dict) and data and data != {"ok": True}:
            return data
    raise NotFoundError("Product")


def _type_label(obj: dict[str, Any], global_label: str = "🌍 Global") -> str:
    st = obj.get("serviceType") or "global"
    return {"global": global_label, "national": "🏳️ National"}.get(st, "📍 Local")


def cmd_view(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    p = resolve_product(client, args.product)
    st = p.get("serviceType") or "global"
    print(p.get("name") or f"Product {args.product}")
    print("")
    for text in (p.get("shortDescription"), p.get("description")):
        if text:
            print(text)
            print("")
    tags = p.get("tags") if isinstance(p.get("tags"), list) else None
    print_card(
        "Details",
        [
            ("id", p.get("productId") or p.get("id")),
            ("slug", p.get("slug")),
            ("category", p.get("category")),
            ("price", f"${p['price']}" if p.get("price") else None),
            ("serviceType", _type_label(p)),
            ("city", p.get("serviceCity") if st == "local" else None),
            ("country", p.get("serviceCountry") if st in ("national", "local") else None),
            ("buyUrl", p.get("buyUrl")),
            ("subscription", "available" if p.get("subscriptionAvailable") else None),
            ("tags", tags),
            ("sellerId", p.get("storeId")),
        ],
    )

    offers = client.advisory("GET", f"/products/{_seg(p.get('productId') or p.get('id'))}/offers")
    offer_list = _as_list(offers, "offers")
    if offer_list:
        print("")
        print("Available Offers:")
        for i, o in enumerate(offer_list, start=1):
            row = pick_offer_fields(o)
            print(f"  {i}. {row['serviceType']} {row['price']} ({row['availability']}) - {row['buyUrl']}")
    return 0


def _with_intent(url: str, intent_id: Any) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}market_intent={quote(str(intent_id), safe='')}"


def cmd_buy(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    p = resolve_product(client, args.product)
    buy_url = p.get("buyUrl")

    offer_id: int | str | None = None
    if args.offer:
        offer_id = int(args.offer) if args.offer.isdigit() else args.offer
        try:
            offer = client.get(f"/offers/{_seg(offer_id)}")
            if isinstance(offer, dict) and offer.get("buyUrl"):
                buy_url = offer["buyUrl"]
        except TerminalMarketError as e:
            log.debug("offer lookup failed: %s", e)
            print("Offer not found, using product buyUrl", file=sys.stderr)

    intent = client.advisory(
        "POST",
        "/intents",
        {"source": "cli", "productId": p.get("id"), "sellerId": p.get("storeId"), "offerId": offer_id},
    )
    intent_id = intent.get("intentId") if isinstance(intent, dict) else None
    if intent_id and buy_url:
        buy_url = _with_intent(buy_url, intent_id)

    client.advisory(
        "POST",
        "/clicks",
        {
            "source": "cli",
            "productId": p.get("productId") or p.get("id"),
            "storeId": p.get("storeId"),
            "offerId": offer_id,
            "intentId": intent_id,
        },
    )

    if not buy_url:
        raise TerminalMarketError("This product has no buyUrl.")

    print(f"Opening: {buy_url}")
    if intent_id:
        print(f"Intent ID: {intent_id}")
    if _should_open(args):
        _open_browser(buy_url)
    return 0


def cmd_sellers(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    limit = _clamp_limit(args.limit)
    sellers = _as_list(client.get("/sellers" if args.all else "/sellers/verified"), "sellers")
    loc = _location_params(args, client.store)
    if loc["city"]:
        city = loc["city"].lower()
        sellers = [s for s in sellers if s.get("serviceType") == "local" and str(s.get("baseCity") or "").lower() == city]
    if loc["country"]:
        country = loc["country"].lower()
        sellers = [
            s
            for s in sellers
            if s.get("serviceType") in ("national", "local") and str(s.get("baseCountry") or "").lower() == country
        ]
    print_table([pick_seller_fields(s) for s in sellers[:limit]], SELLER_COLUMNS)
    return 0


def cmd_seller(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    s = _get_or_none(client, f"/sellers/{_seg(args.slug)}")
    if not isinstance(s, dict):
        raise NotFoundError("Seller")
    st = s.get("serviceType") or "global"
    print(s.get("name") or args.slug)
    if s.get("verified"):
        print("✓ Verified Seller")
    print("")
    if s.get("description"):
        print(s["description"])
        print("")
    print_card(
        "Details",
        [
            ("slug", s.get("slug")),
            ("serviceType", _type_label(s, "🌍 Global (SaaS/Digital)")),
            ("city", s.get("baseCity") if st == "local" else None),
            ("country", s.get("baseCountry") if st in ("national", "local") else None),
            ("website", s.get("website")),
            ("support", s.get("supportEmail")),
            ("badges", s.get("badges") if isinstance(s.get("badges"), list) else None),
            ("categories", s.get("categories") if isinstance(s.get("categories"), list) else None),
            ("shippingPolicy", s.get("shippingPolicy")),
            ("returnPolicy", s.get("returnPolicy")),
        ],
    )
    return 0


def cmd_offers(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    limit = _clamp_limit(args.limit)
    offers = _as_list(client.get("/offers", params={"product_id": args.product, "seller_id": args.seller}), "offers")
    print_table([pick_offer_fields(o) for o in offers[:limit]], OFFER_COLUMNS)
    return 0


def cmd_about(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    print("TerminalMarket")
    print("The marketplace for developers who prefer the command line.\n")
    print("We connect developers with premium services: coffee subscriptions,")
    print("healthy snacks, coworking spaces, productivity tools, and more.\n")
    print("Website: https://terminalmarket.app")
    print(f"API:     {client.api_base}")
    return 0


# cart / orders


def cmd_cart(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    subcmd = args.subcmd or "list"
    if subcmd == "add":
        if args.qty < 1:
            raise ValidationError("--qty must be at least 1")
        client.post("/cart", {"productId": args.product_id, "quantity": args.qty})
        print(f"Added {args.qty} x {args.product_id} to cart.")
        return 0
    if subcmd == "remove":
        client.delete(f"/cart/{_seg(args.item_id)}")
        print("Removed from cart.")
        return 0
    if subcmd == "clear":
        client.delete("/cart")
        print("Cart cleared.")
        return 0

    data = client.get("/cart")
    items = _as_list(data, "items")
    print_table(
        [pick_cart_item_fields(i) for i in items],
        [("id", "ID"), ("product", "PRODUCT"), ("quantity", "QTY"), ("price", "PRICE")],
    )
    if items and isinstance(data, dict) and data.get("total") is not None:
        print(f"\nTotal: ${data['total']}")
    return 0


def cmd_orders(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    orders = _as_list(client.get("/orders"), "orders")
    print_table(
        [pick_order_fields(o) for o in orders],
        [("id", "ID"), ("status", "STATUS"), ("total", "TOTAL"), ("createdAt", "CREATED")],
    )
    return 0


# reviews


def cmd_reviews(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    reviews = _as_list(client.get(f"/stores/{_seg(args.store_id)}/reviews"), "reviews")
    print_table(
        [pick_review_fields(r) for r in reviews],
        [("rating", "RATING"), ("author", "AUTHOR"), ("comment", "COMMENT"), ("createdAt", "DATE")],
    )
    return 0


def cmd_review(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    if not 1 <= args.rating <= 5:
        raise ValidationError("Rating must be between 1 and 5.")
    client.post(
        f"/stores/{_seg(args.store_id)}/reviews",
        {"rating": args.rating, "comment": args.comment.strip()},
    )
    print("Review submitted.")
    return 0


def cmd_rating(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    data = client.get(f"/stores/{_seg(args.store_id)}/rating")
    if not isinstance(data, dict):
        data = {}
    avg = data.get("average") if data.get("average") is not None else data.get("rating")
    count = data.get("count") or data.get("totalReviews") or 0
    if avg is None or not count:
        print("No ratings yet.")
        return 0
    print(f"{float(avg):.1f} / 5 ({count} review{'s' if count != 1 else ''})")
    return 0


# ai / credits


def _is_chat_capable(model: dict[str, Any] | None) -> bool:
    if not model:
        return False
    caps = model.get("capabilities")
    return model.get("type") == "agent" or bool(model.get("supportsChat")) or (isinstance(caps, list) and "chat" in caps)


def _lookup_model(client: TerminalMarketClient, model: str) -> dict[str, Any] | None:
    try:
        data = client.get(f"/ai/models/{_seg(model)}")
    except TerminalMarketError as e:
        log.debug("model lookup failed, assuming stateless model: %s", e)
        return None
    return data if isinstance(data, dict) else None


def _ai_text(data: Any) -> str:
    if isinstance(data, dict):
        for k in ("output", "text", "response", "result", "message"):
            v = data.get(k)
            if isinstance(v, str) and v.strip():
                return v
    return str(data)


class _AiSession:
    """One model conversation; the server threads chat turns via ``responseId``."""

    def __init__(self, client: TerminalMarketClient, model: str) -> None:
        self.client = client
        self.model = model
        self.chat = _is_chat_capable(_lookup_model(client, model))
        self.previous_response_id: str | None = None

    def send(self, text: str) -> dict[str, Any]:
        if self.chat:
            data = self.client.post(
                f"/ai/agents/{_seg(self.model)}/chat",
                {"message": text, "previousResponseId": self.previous_response_id},
            )
            if isinstance(data, dict) and data.get("responseId"):
                self.previous_response_id = data["responseId"]
        else:
            data = self.client.post("/ai/run", {"model": self.model, "input": text})
        return data if isinstance(data, dict) else {"output": str(data)}


def _print_ai_reply(data: dict[str, Any]) -> None:
    print(_ai_text(data))
    if data.get("creditsUsed") is not None:
        print(f"(credits used: {data['creditsUsed']})", file=sys.stderr)


def cmd_ai(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    if args.subcmd == "models":
        models = _as_list(client.get("/ai/models"), "models")
        print_table(
            [pick_ai_model_fields(m) for m in models],
            [("slug", "SLUG"), ("name", "NAME"), ("type", "TYPE"), ("credits", "CREDITS")],
        )
        return 0

    if args.subcmd == "run":
        text = " ".join(args.input).strip()
        if not text:
            raise ValidationError("Input must not be empty.")
        _print_ai_reply(_AiSession(client, args.model).send(text))
        return 0

    if args.subcmd == "chat":
        session = _AiSession(client, args.model)
        if not session.chat:
            print(f"{args.model} is not a chat agent; each message is sent on its own.", file=sys.stderr)
        print("Type 'exit' to quit.", file=sys.stderr)
        while True:
            try:
                line = input("you> ").strip()
            except (EOFError, KeyboardInterrupt):
                print("")
                break
            if not line:
                continue
            if line.lower() in ("exit", "quit"):
                break
            _print_ai_reply(session.send(line))
        return 0

    raise AssertionError("unreachable")


def cmd_credits(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    subcmd = args.subcmd or "balance"
    if subcmd == "balance":
        data = client.get("/credits/balance")
        balance = data.get("balance", data.get("credits", 0)) if isinstance(data, dict) else data
        print(f"Credits: {balance}")
        return 0
    if subcmd == "packages":
        packages = _as_list(client.get("/credits/packages"), "packages")
        rows = [
            {"id": p.get("id", ""), "credits": p.get("credits", ""), "price": f"${p['price']}" if p.get("price") else ""}
            for p in packages
        ]
        print_table(rows, [("id", "ID"), ("credits", "CREDITS"), ("price", "PRICE")])
        return 0
    if subcmd == "buy":
        data = client.post("/credits/purchase", {"packageId": args.package_id})
        url = (data.get("checkoutUrl") or data.get("url")) if isinstance(data, dict) else None
        if not url:
            raise TerminalMarketError("No checkout URL returned for this package.")
        print(f"Opening: {url}")
        if _should_open(args):
            _open_browser(url)
        return 0
    raise AssertionError("unreachable")


# watch rules


def cmd_watch(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    if args.subcmd == "create":
        spec = parse_watch_args(getattr(args, "tokens", []))
        data = client.post("/watch-rules", spec.to_payload())
        rule_id = data.get("id") if isinstance(data, dict) else None
        print(f"Watch rule created{f' (id {rule_id})' if rule_id else ''}: {spec.query}")
        print(f"Checks every {spec.interval_minutes} min, notifies via {spec.notify}.")
        return 0

    if args.subcmd == "list":
        rules = _as_list(client.get("/watch-rules"), "rules", "watchRules")
        print_table(
            [pick_watch_rule_fields(r) for r in rules],
            [
                ("id", "ID"),
                ("name", "NAME"),
                ("query", "QUERY"),
                ("notify", "NOTIFY"),
                ("interval", "EVERY(MIN)"),
                ("status", "STATUS"),
            ],
        )
        return 0

    path = f"/watch-rules/{_seg(args.rule_id)}"
    if args.subcmd in ("pause", "resume"):
        client.patch(path, {"status": "paused" if args.subcmd == "pause" else "active"})
        print(f"Watch rule {args.rule_id} {'paused' if args.subcmd == 'pause' else 'resumed'}.")
        return 0
    if args.subcmd == "delete":
        client.delete(path)
        print(f"Watch rule {args.rule_id} deleted.")
        return 0
    if args.subcmd == "logs":
        limit = max(1, min(MAX_WATCH_LOGS, args.limit or DEFAULT_LIMIT))
        logs = _as_list(client.get(f"{path}/logs", params={"limit": str(limit)}), "logs")[:limit]
        rows = [
            {
                "at": e.get("evaluatedAt") or e.get("createdAt", ""),
                "matches": e.get("matchCount", e.get("matches", "")),
                "delivered": "yes" if e.get("delivered") else "no",
                "message": e.get("message") or e.get("error") or "",
            }
            for e in logs
        ]
        print_table(rows, [("at", "AT"), ("matches", "MATCHES"), ("delivered", "DELIVERED"), ("message", "MESSAGE")])
        return 0
    raise AssertionError("unreachable")


# wishlist / subscriptions / webhooks


def cmd_wishlist(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    subcmd = args.subcmd or "list"
    if subcmd == "add":
        client.post("/wishlist", {"productId": args.product_id})
        print(f"Added {args.product_id} to wishlist.")
        return 0
    if subcmd == "remove":
        client.delete(f"/wishlist/{_seg(args.product_id)}")
        print(f"Removed {args.product_id} from wishlist.")
        return 0
    items = _as_list(client.get("/wishlist"), "items")
    print_table(
        [pick_wishlist_fields(w) for w in items],
        [("id", "ID"), ("name", "NAME"), ("price", "PRICE"), ("addedAt", "ADDED")],
    )
    return 0


def cmd_subscriptions(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    subcmd = args.subcmd or "list"
    if subcmd == "create":
        frequency = args.frequency.strip().lower()
        if frequency not in FREQUENCIES:
            raise ValidationError(f"--frequency must be one of: {', '.join(FREQUENCIES)}")
        day = (args.day or "").strip().lower()[:3] or None
        if day is not None and day not in WEEKDAYS:
            raise ValidationError(f"--day must be one of: {', '.join(WEEKDAYS)}")
        if day is not None and frequency not in ("weekly", "biweekly"):
            raise ValidationError("--day only applies to weekly or biweekly plans")
        body: dict[str, Any] = {"productId": args.product_id, "frequency": frequency}
        if day:
            body["dayOfWeek"] = day
        data = client.post("/subscriptions", body)
        sub_id = data.get("id") if isinstance(data, dict) else None
        print(f"Subscribed{f' (id {sub_id})' if sub_id else ''}: {args.product_id}, {frequency}")
        return 0
    if subcmd == "cancel":
        client.post(f"/subscriptions/{_seg(args.subscription_id)}/cancel")
        print(f"Subscription {args.subscription_id} cancelled.")
        return 0
    subs = _as_list(client.get("/subscriptions"), "subscriptions")
    print_table(
        [pick_subscription_fields(s) for s in subs],
        [("id", "ID"), ("product", "PRODUCT"), ("frequency", "FREQUENCY"), ("status", "STATUS"), ("nextDelivery", "NEXT")],
    )
    return 0


def cmd_webhooks(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    subcmd = args.subcmd or "list"
    if subcmd == "add":
        url = args.url.strip()
        if not url.startswith(("http://", "https://")):
            raise ValidationError("Webhook URL must be http(s).")
        body: dict[str, Any] = {"url": url}
        if args.event:
            body["events"] = [e.strip() for e in args.event if e.strip()]
        data = client.post("/user/webhooks", body)
        secret = data.get("secret") if isinstance(data, dict) else None
        print(f"Webhook added: {url}")
        if secret:
            print(f"Signing secret (shown once): {secret}")
        return 0
    if subcmd == "remove":
        client.delete(f"/user/webhooks/{_seg(args.webhook_id)}")
        print("Webhook removed.")
        return 0
    hooks = _as_list(client.get("/user/webhooks"), "webhooks")
    print_table(
        [pick_webhook_fields(h) for h in hooks],
        [("id", "ID"), ("url", "URL"), ("events", "EVENTS"), ("active", "ACTIVE")],
    )
    return 0


# requests / jobs / library / rewards


def cmd_requests(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    subcmd = args.subcmd or "list"
    if subcmd == "create":
        title = args.title.strip()
        if not title:
            raise ValidationError("Title must not be empty.")
        body: dict[str, Any] = {"title": title, "description": args.description.strip()}
        if args.budget is not None:
            body["budget"] = _check_price(args.budget, "--budget")
        if args.category:
            body["category"] = args.category
        data = client.post("/requests", body)
        req_id = data.get("id") if isinstance(data, dict) else None
        print(f"Request posted{f' (id {req_id})' if req_id else ''}. Sellers can now send proposals.")
        return 0
    if subcmd == "view":
        r = _get_or_none(client, f"/requests/{_seg(args.request_id)}")
        if not isinstance(r, dict):
            raise NotFoundError("Request")
        print_card(
            r.get("title") or f"Request {args.request_id}",
            [("status", r.get("status")), ("budget", f"${r['budget']}" if r.get("budget") else None), ("description", r.get("description"))],
        )
        proposals = _as_list(r.get("proposals"))
        if proposals:
            print("")
            rows = [
                {
                    "id": x.get("id", ""),
                    "seller": x.get("sellerName") or x.get("sellerId", ""),
                    "price": f"${x['price']}" if x.get("price") else "",
                    "message": x.get("message", ""),
                }
                for x in proposals
            ]
            print_table(rows, [("id", "ID"), ("seller", "SELLER"), ("price", "PRICE"), ("message", "MESSAGE")])
        return 0
    reqs = _as_list(client.get("/requests"), "requests")
    print_table(
        [pick_request_fields(r) for r in reqs],
        [("id", "ID"), ("title", "TITLE"), ("budget", "BUDGET"), ("status", "STATUS"), ("proposals", "PROPOSALS")],
    )
    return 0


def cmd_jobs(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    subcmd = args.subcmd or "list"
    if subcmd == "view":
        v = _get_or_none(client, f"/vacancies/{_seg(args.vacancy_id)}")
        if not isinstance(v, dict):
            raise NotFoundError("Vacancy")
        row = pick_vacancy_fields(v)
        print_card(
            row["title"] or f"Vacancy {args.vacancy_id}",
            [("company", row["company"]), ("location", row["location"]), ("salary", row["salary"]), ("description", v.get("description"))],
        )
        return 0
    if subcmd == "apply":
        client.post("/applications", {"vacancyId": args.vacancy_id, "coverLetter": args.message.strip()})
        print("Application sent.")
        return 0
    vacancies = _as_list(client.get("/vacancies"), "vacancies")
    print_table(
        [pick_vacancy_fields(v) for v in vacancies],
        [("id", "ID"), ("title", "TITLE"), ("company", "COMPANY"), ("location", "LOCATION"), ("salary", "SALARY")],
    )
    return 0


def cmd_library(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    subcmd = args.subcmd or "list"
    if subcmd == "download":
        dest = Path(args.output or f"library-{args.item_id}").expanduser()
        size = client.download(f"/library/{_seg(args.item_id)}/download", dest)
        print(f"Saved {dest} ({size} bytes)")
        return 0
    items = _as_list(client.get("/library"), "items")
    print_table(
        [pick_library_fields(i) for i in items],
        [("id", "ID"), ("name", "NAME"), ("file", "FILE"), ("purchasedAt", "PURCHASED")],
    )
    return 0


def cmd_rewards(args: argparse.Namespace, client: TerminalMarketClient) -> int:
    data = client.get("/rewards")
    if not isinstance(data, dict):
        data = {}
    print_card(
        "Rewards",
        [("points", data.get("points", 0)), ("tier", data.get("tier")), ("nextTier", data.get("nextTier"))],
    )
    return 0


COMMANDS: dict[str, Callable[[argparse.Namespace, TerminalMarketClient], int]] = {
    "config": cmd_config,
    "location": cmd_location,
    "login": cmd_login,
    "register": cmd_register,
    "logout": cmd_logout,
    "whoami": cmd_whoami,
    "profile": cmd_profile,
    "categories": cmd_categories,
    "products": cmd_products,
    "category": cmd_products,
    "search": cmd_search,
    "view": cmd_view,
    "buy": cmd_buy,
    "sellers": cmd_sellers,
    "seller": cmd_seller,
    "offers": cmd_offers,
    "about": cmd_about,
    "cart": cmd_cart,
    "orders": cmd_orders,
    "reviews": cmd_reviews,
    "review": cmd_review,
    "rating": cmd_rating,
    "ai": cmd_ai,
    "credits": cmd_credits,
    "watch": cmd_watch,
    "wishlist": cmd_wishlist,
    "subscriptions": cmd_subscriptions,
    "webhooks": cmd_webhooks,
    "requests": cmd_requests,
    "jobs": cmd_jobs,
    "library": cmd_library,
    "rewards": cmd_rewards,
}


def format_error(err: TerminalMarketError, cmd: str | None = None) -> str:
    # A 401 from login/register means bad credentials, not an expired session.
    if err.kind is ErrorKind.UNAUTHORIZED and cmd not in ("login", "register"):
        return LOGIN_HINT
    if err.kind is ErrorKind.PAYMENT_REQUIRED:
        return CREDITS_HINT
    return str(err)


def _glue_dash_values(argv: list[str]) -> list[str]:
    # argparse reads "--sort -price" as two options; rewrite it to "--sort=-price".
    out: list[str] = []
    i = 0
    while i < len(argv):
        tok = argv[i]
        nxt = argv[i + 1] if i + 1 < len(argv) else None
        if tok == "--sort" and nxt and nxt.startswith("-") and not nxt.startswith("--"):
            out.append(f"--sort={nxt}")
            i += 2
            continue
        out.append(tok)
        i += 1
    return out


def _split_watch_tokens(argv: list[str]) -> tuple[list[str], list[str] | None]:
    """
    ``watch create`` takes free-form trailing tokens (including its own
    --flags), so they are cut off before argparse sees them.
    Only applies when ``watch`` is the subcommand, never to free text that
    happens to contain those words.
    """
    i = 0
    while i < len(argv) and argv[i].startswith("-"):
        i += 2 if argv[i] in GLOBAL_VALUE_FLAGS else 1
    if argv[i : i + 2] != ["watch", "create"]:
        return argv, None
    tail = argv[i + 2 :]
    if any(t in ("-h", "--help") for t in tail):
        return argv, None
    return argv[: i + 2], tail


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if not debug:
        # httpx logs every request at INFO.
        logging.getLogger("httpx").setLevel(logging.WARNING)


def main(
    argv: list[str] | None = None,
    *,
    store: ConfigStore | None = None,
    transport: httpx.BaseTransport | None = None,
) -> int:
    argv, watch_tokens = _split_watch_tokens(list(sys.argv[1:] if argv is None else argv))
    args = build_parser().parse_args(_glue_dash_values(argv))
    if watch_tokens is not None:
        args.tokens = watch_tokens
    _configure_logging(args.debug or _truthy_env("TERMINALMARKET_DEBUG"))

    if store is None:
        store = ConfigStore.load(args.config)
    log.debug("config %s", store.path)

    client = TerminalMarketClient(store, api_base=args.api, transport=transport)
    try:
        return COMMANDS[args.cmd](args, client)
    except TerminalMarketError as e:
        print(f"error: {format_error(e, args.cmd)}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        client.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
