"""Tests for bcrypt credential hashing and session token digests."""

from __future__ import annotations

import sys
import unittest
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from library.security import (  # noqa: E402
    CredentialHasher,
    digest_session_token,
    generate_session_token,
    tokens_match,
)


class PasswordHashingTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.hasher = CredentialHasher()

    def test_hash_uses_bcrypt_with_work_factor_ten(self) -> None:
        hashed = self.hasher.hash("supersecurepassword")
        self.assertTrue(hashed.startswith("$2b$10$"), hashed)
        self.assertTrue(self.hasher.verify("supersecurepassword", hashed))
        self.assertFalse(self.hasher.verify("incorrect", hashed))

    def test_hash_is_salted(self) -> None:
        first = self.hasher.hash("same-password")
        second = self.hasher.hash("same-password")
        self.assertNotEqual(first, second)
        self.assertTrue(self.hasher.verify("same-password", first))
        self.assertTrue(self.hasher.verify("same-password", second))

    def test_malformed_digest_verifies_false(self) -> None:
        self.assertFalse(self.hasher.verify("password", "not-a-bcrypt-hash"))
        self.assertFalse(self.hasher.verify("password", ""))
        self.assertFalse(self.hasher.verify("password", None))

    def test_empty_password_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.hasher.hash("")
        self.assertFalse(self.hasher.verify("", self.hasher.hash("something")))

    def test_dummy_verify_runs(self) -> None:
        self.hasher.dummy_verify()


class SessionTokenTests(unittest.TestCase):
    def test_tokens_are_unique_and_url_safe(self) -> None:
        tokens = {generate_session_token() for _ in range(50)}
        self.assertEqual(len(tokens), 50)
        for token in tokens:
            self.assertRegex(token, r"^[A-Za-z0-9_-]+$")
            self.assertGreaterEqual(len(token), 40)

    def test_digest_depends_on_secret(self) -> None:
        token = generate_session_token()
        first = digest_session_token("secret-a", token)
        self.assertEqual(first, digest_session_token("secret-a", token))
        self.assertNotEqual(first, digest_session_token("secret-b", token))
        self.assertNotIn(token, first)

    def test_tokens_match(self) -> None:
        self.assertTrue(tokens_match("abc", "abc"))
        self.assertFalse(tokens_match("abc", "abd"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
