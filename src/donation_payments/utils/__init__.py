from .crypto import constant_time_equals, fingerprint, hmac_sha256_hex, sha256_hex
from .masking import mask_email

__all__ = [
    "constant_time_equals", "fingerprint", "hmac_sha256_hex", "sha256_hex",
    "mask_email",
]
