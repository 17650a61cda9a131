from __future__ import annotations

import pytest

from drivegate.common.keys import InvalidKey, decode_key, encode_key, normalize_key


KEY = bytes(range(32))


def test_encode_key_uses_z_base_32() -> None:
    encoded = encode_key(KEY)
    assert len(encoded) == 52
    assert set(encoded) <= set("ybndrfg8ejkmcpqxot1uwisza345h769")
    assert encode_key(b"\x00" * 32) == "y" * 52


def test_decode_accepts_hex_and_z_base_32() -> None:
    assert decode_key(KEY.hex()) == KEY
    assert decode_key(encode_key(KEY)) == KEY
    assert decode_key(encode_key(KEY).upper()) == KEY
    assert decode_key(KEY) == KEY


@pytest.mark.parametrize("value", ["", "abc", "z" * 64, "0" * 52 + "!", b"short"])
def test_decode_rejects_garbage(value) -> None:
    with pytest.raises(InvalidKey):
        decode_key(value)


def test_normalize_key_is_canonical() -> None:
    assert normalize_key(KEY.hex()) == encode_key(KEY)
    assert normalize_key(encode_key(KEY)) == encode_key(KEY)


def test_encode_key_rejects_wrong_length() -> None:
    with pytest.raises(InvalidKey):
        encode_key(b"\x01" * 31)
