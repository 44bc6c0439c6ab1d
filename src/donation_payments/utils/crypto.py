import base64
import hashlib
import hmac
import json


def hmac_sha256(key: bytes, message: bytes) -> bytes:
    return hmac.new(key, message, hashlib.sha256).digest()


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    """HMAC-SHA256 of the raw message bytes, hex encoded."""
    return hmac_sha256(secret.encode("utf-8"), message).hex()


def hmac_sha256_base64(key: bytes, message: bytes) -> str:
    return base64.b64encode(hmac_sha256(key, message)).decode("ascii")


def constant_time_equals(expected: str | bytes, received: str | bytes) -> bool:
    """Compare two signatures without short-circuiting on the first mismatch."""
    if isinstance(expected, str):
        expected = expected.encode("utf-8")
    if isinstance(received, str):
        received = received.encode("utf-8")
    return hmac.compare_digest(expected, received)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fingerprint(operation: str, params: dict) -> str:
    """Stable digest of an operation and its parameters."""
    message = json.dumps({"operation": operation, "params": params}, sort_keys=True, default=str)
    return sha256_hex(message.encode("utf-8"))
