"""
Tests for the card vault.
"""
import base64
import re

import pytest

from motor_pagos.core.exceptions import VaultIntegrityException
from motor_pagos.core.vault import (
    IV_LENGTH,
    TAG_LENGTH,
    decrypt,
    encrypt,
    generate_token,
    hash_data,
    mask_card_number,
)


class TestEncryption:

    def test_decrypt_returns_original_card_number(self) -> None:
        assert decrypt(encrypt("4111111111111111")) == "4111111111111111"

    def test_fresh_iv_per_call(self) -> None:
        first, second = encrypt("4111111111111111"), encrypt("4111111111111111")
        assert first != second
        assert base64.b64decode(first)[:IV_LENGTH] != base64.b64decode(second)[:IV_LENGTH]

    def test_blob_layout_is_iv_tag_ciphertext(self) -> None:
        raw = base64.b64decode(encrypt("1234"))
        assert len(raw) == IV_LENGTH + TAG_LENGTH + len("1234")

    def test_tampered_ciphertext_is_rejected(self) -> None:
        raw = bytearray(base64.b64decode(encrypt("4111111111111111")))
        raw[-1] ^= 0x01
        with pytest.raises(VaultIntegrityException):
            decrypt(base64.b64encode(bytes(raw)).decode())

    def test_tampered_tag_is_rejected(self) -> None:
        raw = bytearray(base64.b64decode(encrypt("4111111111111111")))
        raw[IV_LENGTH] ^= 0xFF
        with pytest.raises(VaultIntegrityException):
            decrypt(base64.b64encode(bytes(raw)).decode())

    @pytest.mark.parametrize("blob", ["not base64 at all!!", base64.b64encode(b"short").decode(), ""])
    def test_malformed_blob_is_rejected(self, blob: str) -> None:
        with pytest.raises(VaultIntegrityException):
            decrypt(blob)


class TestTokensAndMasking:

    def test_token_format(self) -> None:
        token = generate_token()
        assert re.fullmatch(r"TOK_[0-9A-F]{32}", token)
        assert generate_token() != token

    @pytest.mark.parametrize(
        "card_number",
        ["4111111111111111", "4111 1111 1111 1111", "4111-1111-1111-1111"],
    )
    def test_mask_only_exposes_last_four(self, card_number: str) -> None:
        assert mask_card_number(card_number) == "**** **** **** 1111"

    def test_hash_is_sha256_hex(self) -> None:
        digest = hash_data("123456")
        assert len(digest) == 64
        assert digest == hash_data("123456")
        assert digest != hash_data("123457")
