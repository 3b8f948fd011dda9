"""Internet Computer identifier helpers."""

import base64


def pair_key(token_a: str, token_b: str) -> str:
    """Canonical pool key for a token pair: lowercased and sorted."""
    a = token_a.lower()
    b = token_b.lower()
    return f"{a}:{b}" if a < b else f"{b}:{a}"


def is_zero_for_one(input_token: str, output_token: str) -> bool:
    """True when the input token is token0 of its pool (lexicographically smaller ID)."""
    return input_token.lower() < output_token.lower()


def principal_to_bytes(principal: str) -> bytes:
    """Decode a textual principal (e.g. ``aaaaa-aa``) into its raw bytes.

    The textual form is the base32 encoding of a 4-byte CRC32 checksum
    followed by the principal bytes, grouped with dashes.
    """
    text = principal.replace("-", "").upper()
    padding = "=" * (-len(text) % 8)
    try:
        raw = base64.b32decode(text + padding)
    except ValueError as e:
        raise ValueError(f"Invalid principal: {principal}") from e
    if len(raw) < 4:
        raise ValueError(f"Invalid principal: {principal}")
    return raw[4:]


def principal_to_subaccount(principal: str) -> bytes:
    """Derive the 32-byte pool subaccount for a principal.

    Byte 0 holds the principal length and the principal bytes follow.
    ICPSwap credits direct (icrc1) deposits to this subaccount.
    """
    raw = principal_to_bytes(principal)
    sub = bytearray(32)
    sub[0] = len(raw)
    sub[1 : 1 + len(raw)] = raw
    return bytes(sub)
