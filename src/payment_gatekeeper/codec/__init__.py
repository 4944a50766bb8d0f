"""Payment-code checksum codec."""

from payment_gatekeeper.codec.checksum import (
    ChecksumReport,
    PayloadChecksumCodec,
    PayloadTooShortError,
    add_or_replace_checksum,
    calculate,
    extract_checksum,
    format_checksum,
    full_validate,
    strip_checksum,
    validate,
    validate_structure,
)

__all__ = [
    "ChecksumReport",
    "PayloadChecksumCodec",
    "PayloadTooShortError",
    "add_or_replace_checksum",
    "calculate",
    "extract_checksum",
    "format_checksum",
    "full_validate",
    "strip_checksum",
    "validate",
    "validate_structure",
]
