import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from terminalmarket.config import DEFAULT_API_BASE, ConfigStore, config_path, redact


class TestConfigPath(unittest.TestCase):
    def test_env_override(self) -> None:
        with patch.dict(os.environ, {"TERMINALMARKET_CONFIG_PATH": "/tmp/tm-test/config.json"}):
            self.assertEqual(config_path(), Path("/tmp/tm-test/config.json"))

    def test_explicit_override_wins(self) -> None:
        with patch.dict(os.environ, {"TERMINALMARKET_CONFIG_PATH": "/tmp/a.json"}):
            self.assertEqual(config_path("/tmp/b.json"), Path("/tmp/b.json"))


class TestConfigStore(unittest.TestCase):
    def test_get_set_delete_persist(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "config.json"
            store = ConfigStore.load(path)
            self.assertEqual(store.get("missing", "dflt"), "dflt")

            store.set("apiBase", "http://localhost:5000/api")
            self.assertEqual(ConfigStore.load(path).get("apiBase"), "http://localhost:5000/api")

            store.delete("apiBase")
            self.assertIsNone(ConfigStore.load(path).get("apiBase"))
            store.delete("never-set")

    def test_missing_and_corrupt_files_fail_open(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            self.assertEqual(ConfigStore.load(path).as_dict(), {})

            path.write_text("{not json", encoding="utf-8")
            store = ConfigStore.load(path)
            self.assertEqual(store.as_dict(), {})
            self.assertIsNone(store.session_cookie)

            path.write_text(json.dumps(["a", "list"]), encoding="utf-8")
            self.assertEqual(ConfigStore.load(path).as_dict(), {})

    def test_api_base_default_and_env(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = ConfigStore(Path(tmp) / "c.json")
            with patch.dict(os.environ, {}, clear=False):
                os.environ.pop("TERMINALMARKET_API", None)
                self.assertEqual(store.api_base, DEFAULT_API_BASE)
                with patch.dict(os.environ, {"TERMINALMARKET_API": "http://env/api"}):
                    self.assertEqual(store.api_base, "http://env/api")

    def test_clear_session_keeps_preferences(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            store = ConfigStore(
                path,
                {
                    "apiBase": "http://x/api",
                    "sessionCookie": "connect.sid=1",
                    "csrfToken": "c",
                    "user": {"email": "a@b.c"},
                    "location": {"city": "Berlin", "country": "DE"},
                },
            )
            store.clear_session()
            reloaded = ConfigStore.load(path)
            self.assertIsNone(reloaded.session_cookie)
            self.assertIsNone(reloaded.csrf_token)
            self.assertIsNone(reloaded.user)
            self.assertEqual(reloaded.location, {"city": "Berlin", "country": "DE"})
            self.assertEqual(reloaded.get("apiBase"), "http://x/api")

    def test_location_requires_city(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = ConfigStore(Path(tmp) / "c.json", {"location": {"country": "DE"}})
            self.assertIsNone(store.location)

    def test_timeout_falls_back_on_garbage(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = ConfigStore(Path(tmp) / "c.json", {"timeoutS": "soon"})
            with patch.dict(os.environ, {}, clear=False):
                os.environ.pop("TERMINALMARKET_TIMEOUT_S", None)
                self.assertEqual(store.timeout_s, 30.0)


class TestRedact(unittest.TestCase):
    def test_redact(self) -> None:
        self.assertIsNone(redact(None))
        self.assertEqual(redact("short"), "sh...rt")
        self.assertEqual(redact("connect.sid=s%3Aabcdef"), "connec...cdef")


if __name__ == "__main__":
    unittest.main()
