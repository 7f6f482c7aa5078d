import json
import tempfile
import unittest
from pathlib import Path

import httpx

from terminalmarket.client import (
    ErrorKind,
    NetworkError,
    TerminalMarketClient,
    TerminalMarketError,
    TerminalMarketHTTPError,
    join_url,
)
from terminalmarket.config import ConfigStore


def _store(tmp: str, **data) -> ConfigStore:
    data.setdefault("apiBase", "https://api.test/api")
    return ConfigStore(Path(tmp) / "config.json", data)


def _client(store: ConfigStore, handler) -> TerminalMarketClient:
    return TerminalMarketClient(store, transport=httpx.MockTransport(handler))


class TestJoinUrl(unittest.TestCase):
    def test_exactly_one_slash_between_base_and_path(self) -> None:
        for base in ("https://api.test/api", "https://api.test/api/"):
            for path in ("products", "/products"):
                self.assertEqual(join_url(base, path), "https://api.test/api/products")

    def test_only_one_redundant_slash_is_stripped(self) -> None:
        self.assertEqual(join_url("https://api.test/api//", "/x"), "https://api.test/api//x")

    def test_absolute_url_passes_through(self) -> None:
        self.assertEqual(join_url("https://api.test/api", "https://cdn.test/f.zip"), "https://cdn.test/f.zip")


class TestRequestHeaders(unittest.TestCase):
    def test_cookie_sent_and_csrf_only_on_unsafe_methods(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": 1})

        with tempfile.TemporaryDirectory() as tmp:
            store = _store(tmp, sessionCookie="connect.sid=s%3Aabc", csrfToken="csrf-1")
            client = _client(store, handler)
            try:
                client.get("/cart")
                client.post("/cart", {"productId": 1})
            finally:
                client.close()

        get_req, post_req = seen
        self.assertEqual(get_req.headers["cookie"], "connect.sid=s%3Aabc")
        self.assertNotIn("x-csrf-token", get_req.headers)
        self.assertEqual(post_req.headers["cookie"], "connect.sid=s%3Aabc")
        self.assertEqual(post_req.headers["x-csrf-token"], "csrf-1")
        self.assertEqual(post_req.headers["content-type"], "application/json")
        self.assertEqual(json.loads(post_req.content), {"productId": 1})

    def test_request_without_session_has_no_cookie_or_csrf(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        with tempfile.TemporaryDirectory() as tmp:
            client = _client(_store(tmp), handler)
            try:
                client.post("/auth/login", {"email": "a@b.c", "password": "x"})
            finally:
                client.close()

        self.assertNotIn("cookie", seen[0].headers)
        self.assertNotIn("x-csrf-token", seen[0].headers)


class TestResponses(unittest.TestCase):
    def test_json_body_round_trips(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"a": 1, "b": [1, 2]})

        with tempfile.TemporaryDirectory() as tmp:
            client = _client(_store(tmp), handler)
            try:
                self.assertEqual(client.get("/x"), {"a": 1, "b": [1, 2]})
                self.assertEqual(client.patch("/x", {}), {"a": 1, "b": [1, 2]})
            finally:
                client.close()

    def test_non_json_success_returns_ok_sentinel(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(204)

        with tempfile.TemporaryDirectory() as tmp:
            client = _client(_store(tmp), handler)
            try:
                self.assertEqual(client.post("/clicks", {}), {"ok": True})
                self.assertEqual(client.delete("/cart/1"), {"ok": True})
            finally:
                client.close()

    def test_malformed_json_raises_client_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>", headers={"content-type": "application/json"})

        with tempfile.TemporaryDirectory() as tmp:
            client = _client(_store(tmp), handler)
            try:
                with self.assertRaises(TerminalMarketError) as ctx:
                    client.get("/orders")
            finally:
                client.close()

        self.assertNotIsInstance(ctx.exception, TerminalMarketHTTPError)
        self.assertIn("GET https://api.test/api/orders returned invalid JSON", str(ctx.exception))

    def test_error_message_carries_method_url_status_and_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        with tempfile.TemporaryDirectory() as tmp:
            client = _client(_store(tmp), handler)
            try:
                with self.assertRaises(TerminalMarketHTTPError) as ctx:
                    client.post("/orders", {})
            finally:
                client.close()

        err = ctx.exception
        self.assertEqual(err.status_code, 500)
        self.assertEqual(str(err), "POST https://api.test/api/orders failed: 500 Internal Server Error — boom")
        self.assertIs(err.kind, ErrorKind.UNKNOWN)

    def test_error_without_body_has_no_separator(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        with tempfile.TemporaryDirectory() as tmp:
            client = _client(_store(tmp), handler)
            try:
                with self.assertRaises(TerminalMarketHTTPError) as ctx:
                    client.get("/products/9")
            finally:
                client.close()

        self.assertEqual(str(ctx.exception), "GET https://api.test/api/products/9 failed: 404 Not Found")
        self.assertIs(ctx.exception.kind, ErrorKind.NOT_FOUND)

    def test_error_kinds_from_status(self) -> None:
        self.assertIs(TerminalMarketHTTPError("GET", "u", 401).kind, ErrorKind.UNAUTHORIZED)
        self.assertIs(TerminalMarketHTTPError("POST", "u", 402).kind, ErrorKind.PAYMENT_REQUIRED)
        self.assertIs(
            TerminalMarketHTTPError("POST", "u", 409, "Conflict", "Insufficient stock").kind,
            ErrorKind.UNKNOWN,
        )
        self.assertIn("402", str(TerminalMarketHTTPError("POST", "u", 402, "Payment Required")))

    def test_transport_failure_becomes_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with tempfile.TemporaryDirectory() as tmp:
            client = _client(_store(tmp), handler)
            try:
                with self.assertRaises(NetworkError) as ctx:
                    client.get("/products")
            finally:
                client.close()

        self.assertIs(ctx.exception.kind, ErrorKind.NETWORK)


class TestSessionCookie(unittest.TestCase):
    def test_set_cookie_captured_even_on_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                401,
                headers=[("set-cookie", "connect.sid=s%3Anew; Path=/; HttpOnly"), ("set-cookie", "theme=dark; Path=/")],
            )

        with tempfile.TemporaryDirectory() as tmp:
            store = _store(tmp, sessionCookie="connect.sid=s%3Aold")
            client = _client(store, handler)
            try:
                with self.assertRaises(TerminalMarketHTTPError):
                    client.get("/auth/status")
            finally:
                client.close()

            self.assertEqual(store.session_cookie, "connect.sid=s%3Anew")
            self.assertEqual(ConfigStore.load(store.path).session_cookie, "connect.sid=s%3Anew")

    def test_unrelated_cookie_is_ignored(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"set-cookie": "theme=dark"}, json={})

        with tempfile.TemporaryDirectory() as tmp:
            store = _store(tmp)
            client = _client(store, handler)
            try:
                client.get("/products")
            finally:
                client.close()
            self.assertIsNone(store.session_cookie)

    def test_cookie_name_pattern_is_configurable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"set-cookie": "mkt_sess=xyz; Path=/"}, json={})

        with tempfile.TemporaryDirectory() as tmp:
            store = _store(tmp, sessionCookiePattern=r"mkt_sess")
            client = _client(store, handler)
            try:
                client.get("/auth/status")
            finally:
                client.close()
            self.assertEqual(store.session_cookie, "mkt_sess=xyz")

    def test_jar_cookies_are_not_replayed(self) -> None:
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("cookie"))
            return httpx.Response(200, headers={"set-cookie": "connect.sid=abc; Path=/"}, json={})

        with tempfile.TemporaryDirectory() as tmp:
            store = _store(tmp)
            client = _client(store, handler)
            try:
                client.get("/auth/status")
                store.clear_session()
                client.get("/auth/status")
            finally:
                client.close()

        self.assertEqual(seen, [None, None])


class TestCsrfAndAdvisory(unittest.TestCase):
    def test_fetch_csrf_token_stores_token(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/api/auth/csrf-token")
            return httpx.Response(200, json={"csrfToken": "tok-9"})

        with tempfile.TemporaryDirectory() as tmp:
            store = _store(tmp)
            client = _client(store, handler)
            try:
                self.assertEqual(client.fetch_csrf_token(), "tok-9")
            finally:
                client.close()
            self.assertEqual(store.csrf_token, "tok-9")

    def test_advisory_swallows_http_and_network_failures(self) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if request.url.path.endswith("/clicks"):
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(503, text="down")

        with tempfile.TemporaryDirectory() as tmp:
            client = _client(_store(tmp), handler)
            try:
                self.assertIsNone(client.advisory("POST", "/intents", {"source": "cli"}))
                self.assertIsNone(client.advisory("POST", "/clicks", {"source": "cli"}))
            finally:
                client.close()

        self.assertEqual(calls, ["/api/intents", "/api/clicks"])


class TestDownload(unittest.TestCase):
    def test_download_streams_to_file(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"zipbytes", headers={"content-type": "application/zip"})

        with tempfile.TemporaryDirectory() as tmp:
            dest = Path(tmp) / "out" / "file.zip"
            client = _client(_store(tmp), handler)
            try:
                size = client.download("/library/5/download", dest)
            finally:
                client.close()
            self.assertEqual(size, 8)
            self.assertEqual(dest.read_bytes(), b"zipbytes")

    def test_download_error_raises_http_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, text="not purchased")

        with tempfile.TemporaryDirectory() as tmp:
            dest = Path(tmp) / "file.zip"
            client = _client(_store(tmp), handler)
            try:
                with self.assertRaises(TerminalMarketHTTPError) as ctx:
                    client.download("/library/5/download", dest)
            finally:
                client.close()
            self.assertFalse(dest.exists())
        self.assertIn("403", str(ctx.exception))
        self.assertIn("not purchased", str(ctx.exception))

    def test_interrupted_stream_leaves_no_file(self) -> None:
        def body():
            yield b"first-half"
            raise httpx.ReadError("connection reset")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body(), headers={"content-type": "application/zip"})

        with tempfile.TemporaryDirectory() as tmp:
            dest = Path(tmp) / "file.zip"
            client = _client(_store(tmp), handler)
            try:
                with self.assertRaises(NetworkError):
                    client.download("/library/5/download", dest)
            finally:
                client.close()
            self.assertFalse(dest.exists())
            self.assertEqual(list(Path(tmp).glob("*.part")), [])


if __name__ == "__main__":
    unittest.main()
