"""
Content hashing and canonical encoding.
"""

import unittest
from enum import Enum

from docintegrity import GENESIS_HASH, canonicalize, content_hash, record_hash, verify_hash


class TestContentHash(unittest.TestCase):

    def test_known_vectors(self):
        self.assertEqual(
            content_hash(b""),
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855",
        )
        self.assertEqual(
            content_hash(b"abc"),
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad",
        )

    def test_lowercase_hex_64(self):
        h = content_hash(b"Hello")
        self.assertEqual(len(h), 64)
        self.assertEqual(h, h.lower())

    def test_str_is_utf8(self):
        self.assertEqual(content_hash("Grüße"), content_hash("Grüße".encode("utf-8")))

    def test_bytearray_accepted(self):
        self.assertEqual(content_hash(bytearray(b"Hello")), content_hash(b"Hello"))

    def test_rejects_other_types(self):
        for bad in (None, 42, {"a": 1}, ["x"]):
            with self.assertRaises(TypeError):
                content_hash(bad)

    def test_deterministic_and_sensitive(self):
        self.assertEqual(content_hash(b"Hello"), content_hash(b"Hello"))
        self.assertNotEqual(content_hash(b"Hello"), content_hash(b"Hello World"))

    def test_genesis_hash(self):
        self.assertEqual(GENESIS_HASH, "0" * 64)


class TestVerifyHash(unittest.TestCase):

    def test_match(self):
        self.assertTrue(verify_hash(content_hash(b"data"), b"data"))

    def test_uppercase_declared_hash(self):
        self.assertTrue(verify_hash(content_hash(b"data").upper(), b"data"))

    def test_mismatch(self):
        self.assertFalse(verify_hash(content_hash(b"data"), b"other"))

    def test_malformed_declared_hash(self):
        self.assertFalse(verify_hash("abc", b"data"))
        self.assertFalse(verify_hash(None, b"data"))


class TestCanonicalization(unittest.TestCase):

    def test_sorted_compact(self):
        self.assertEqual(canonicalize({"b": 1, "a": [1, 2]}), b'{"a":[1,2],"b":1}')

    def test_key_order_does_not_change_record_hash(self):
        self.assertEqual(
            record_hash({"actor": "alice", "action": "document.create"}),
            record_hash({"action": "document.create", "actor": "alice"}),
        )

    def test_utf8_not_escaped(self):
        self.assertEqual(canonicalize({"t": "é"}), '{"t":"é"}'.encode("utf-8"))

    def test_enum_value(self):
        class Color(str, Enum):
            RED = "red"

        self.assertEqual(canonicalize({"c": Color.RED}), b'{"c":"red"}')

    def test_rejects_non_string_keys(self):
        with self.assertRaises(ValueError):
            canonicalize({1: "x"})

    def test_rejects_unknown_types(self):
        with self.assertRaises(ValueError):
            canonicalize({"s": {1, 2}})


if __name__ == "__main__":
    unittest.main()
