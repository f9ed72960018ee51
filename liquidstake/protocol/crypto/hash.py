import hashlib

def sha256(data: bytes) -> bytes:
    """Returns SHA256 hash of bytes."""
    return hashlib.sha256(data).digest()

def sha256_hex(data: bytes) -> str:
    """Returns SHA256 hash of bytes as hex string."""
    return sha256(data).hex()

def double_sha256(data: bytes) -> bytes:
    """Returns SHA256(SHA256(data))."""
    return sha256(sha256(data))

def withdrawal_handle(requester: str, nonce: int, delegate_handle: str) -> str:
    """Deterministic handle for a pending withdrawal request."""
    preimage = f"{requester}:{nonce}:{delegate_handle}".encode("utf-8")
    return "wr" + sha256_hex(preimage)[:30]
