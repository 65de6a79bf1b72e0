"""Unit tests for auth/codec.py -- base64, base64url and hex helpers.

Covers:
- b64url_encode strips padding and never emits '+' or '/'
- b64url_decode restores padding and rejects characters outside the alphabet
- b64decode rejects invalid input with MalformedInput
- hex_decode rejects non-hex input with MalformedInput
"""

import pytest

from auth.codec import b64decode, b64encode, b64url_decode, b64url_encode, hex_decode, hex_encode
from auth.errors import MalformedInput


class TestBase64:
    def test_standard_alphabet_keeps_padding(self):
        assert b64encode(b"\xff\xfe") == "//4="
        assert b64decode("//4=") == b"\xff\xfe"

    def test_decode_rejects_garbage(self):
        with pytest.raises(MalformedInput):
            b64decode("not base64!")

    def test_decode_rejects_non_ascii(self):
        with pytest.raises(MalformedInput):
            b64decode("ümlaut")


class TestBase64Url:
    def test_encode_is_url_safe_without_padding(self):
        encoded = b64url_encode(b"\xff\xfe")
        assert encoded == "__4"
        assert "=" not in encoded

    def test_decode_restores_padding(self):
        assert b64url_decode("__4") == b"\xff\xfe"
        assert b64url_decode("") == b""

    @pytest.mark.parametrize("value", ["abc+", "abc/", "ab=c", "ab c", "ünï"])
    def test_decode_rejects_characters_outside_alphabet(self, value):
        with pytest.raises(MalformedInput):
            b64url_decode(value)

    def test_decode_rejects_impossible_length(self):
        with pytest.raises(MalformedInput):
            b64url_decode("a")


class TestHex:
    def test_lowercase_output(self):
        assert hex_encode(b"\x00\xab") == "00ab"
        assert hex_decode("00AB") == b"\x00\xab"

    def test_decode_rejects_non_hex(self):
        with pytest.raises(MalformedInput):
            hex_decode("zz")
