import tempfile
import unittest
from pathlib import Path

from manualqa.auth import AuthenticatedUser, StaticTokenAuthProvider, parse_token_spec
from manualqa.errors import SourceNotFoundError
from manualqa.storage_provider import LocalFileSourceProvider, RoutingSourceProvider


class TestStaticTokenAuth(unittest.TestCase):
    def test_parse_token_spec(self):
        tokens = parse_token_spec("tok1:alice:admin|editor, tok2:bob ,broken")
        self.assertEqual(tokens["tok1"], AuthenticatedUser("alice", frozenset({"admin", "editor"})))
        self.assertEqual(tokens["tok2"].roles, frozenset())
        self.assertNotIn("broken", tokens)

    def test_service_key_is_admin(self):
        provider = StaticTokenAuthProvider({}, service_key="service-secret")
        user = provider.authenticate("service-secret")
        self.assertTrue(user.is_admin)

    def test_unknown_or_missing_token(self):
        provider = StaticTokenAuthProvider(parse_token_spec("tok1:alice"), service_key="")
        self.assertIsNone(provider.authenticate("nope"))
        self.assertIsNone(provider.authenticate(None))
        self.assertIsNone(provider.authenticate(""))
        self.assertEqual(provider.authenticate("tok1").user_id, "alice")


class _RecordingHttp:
    def __init__(self):
        self.refs = []

    def fetch(self, source_ref):
        self.refs.append(source_ref)
        return b"remote"


class TestSourceProviders(unittest.TestCase):
    def test_local_relative_and_file_url(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "manual.pdf"
            path.write_bytes(b"%PDF-fake")
            provider = LocalFileSourceProvider(root=Path(td))
            self.assertEqual(provider.fetch("manual.pdf"), b"%PDF-fake")
            self.assertEqual(provider.fetch(path.as_uri()), b"%PDF-fake")
            with self.assertRaises(SourceNotFoundError):
                provider.fetch("missing.pdf")

    def test_routing_by_scheme(self):
        http = _RecordingHttp()
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "local.pdf").write_bytes(b"local")
            router = RoutingSourceProvider(local=LocalFileSourceProvider(root=Path(td)), http=http)
            self.assertEqual(router.fetch("https://example.org/manual.pdf"), b"remote")
            self.assertEqual(router.fetch("local.pdf"), b"local")
        self.assertEqual(http.refs, ["https://example.org/manual.pdf"])


if __name__ == "__main__":
    unittest.main()
