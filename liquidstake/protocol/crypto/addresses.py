import bech32 # type: ignore
from .hash import sha256, double_sha256
from typing import Tuple, Optional

DEFAULT_PREFIX = "ls"
HASH_LEN = 20

def _encode(h20: bytes, prefix: str) -> str:
    words = bech32.convertbits(h20, 8, 5)
    if words is None:
        raise ValueError("Error converting to bech32 words")
    return bech32.bech32_encode(prefix, words)

def address_from_pubkey(pub_bytes: bytes, prefix: str = DEFAULT_PREFIX) -> str:
    """Bech32 address of a public key (or any identity seed bytes)."""
    # ripemd160 is not guaranteed by hashlib on OpenSSL 3 builds
    return _encode(double_sha256(pub_bytes)[:HASH_LEN], prefix)

def address_from_name(name: str, prefix: str = DEFAULT_PREFIX) -> str:
    """Deterministic address for a named component (core, receipt token)."""
    return address_from_pubkey(sha256(name.encode("utf-8")), prefix=prefix)

def decode_address(addr: str) -> Tuple[str, bytes]:
    """Decodes Bech32 address to (prefix, h20_bytes)."""
    hrp, data = bech32.bech32_decode(addr)
    if hrp is None or data is None:
        raise ValueError("Invalid bech32 address")

    decoded = bech32.convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != HASH_LEN:
        raise ValueError("Address payload is not a 20-byte hash")

    return hrp, bytes(decoded)

def is_valid_address(addr: str, expected_prefix: Optional[str] = None) -> bool:
    if not isinstance(addr, str):
        return False
    try:
        hrp, _ = decode_address(addr)
    except ValueError:
        return False
    return not expected_prefix or hrp == expected_prefix
