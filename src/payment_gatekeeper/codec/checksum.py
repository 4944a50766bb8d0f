"""CRC-16/CCITT-FALSE checksum handling for EMV payment-code payloads.

PIX "copia e cola" codes are EMV tag-length-value strings whose last field
(tag ``63``, length ``04``) carries a checksum of everything before it. This
module computes, validates and repairs that 4-character tail.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

CRC16_POLYNOMIAL = 0x1021
CRC16_INITIAL = 0xFFFF
CHECKSUM_LENGTH = 4
PAYLOAD_PREFIX = "000201"
MIN_CODE_LENGTH = 100

_WHITESPACE = re.compile(r"\s+")


class PayloadTooShortError(ValueError):
    """Raised when a code is too short to carry a checksum."""


@dataclass
class ChecksumReport:
    """Result of a full structural and checksum validation.

    Attributes:
        valid: True only when both the structure and the checksum are valid.
        format_valid: Code starts with the EMV prefix and is long enough.
        crc_valid: Trailing checksum matches the recomputed one.
        current_crc: Checksum found at the end of the code (uppercased).
        calculated_crc: Checksum recomputed over the payload.
        errors: Human-readable validation errors.
    """

    valid: bool = False
    format_valid: bool = False
    crc_valid: bool = False
    current_crc: str | None = None
    calculated_crc: str | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary."""
        return {
            "valid": self.valid,
            "format_valid": self.format_valid,
            "crc_valid": self.crc_valid,
            "current_crc": self.current_crc,
            "calculated_crc": self.calculated_crc,
            "errors": list(self.errors),
        }


def normalize(code: str) -> str:
    """Remove every whitespace character from a code."""
    return _WHITESPACE.sub("", code)


def calculate(payload: str) -> int:
    """Compute the CRC-16/CCITT-FALSE of a payload.

    Args:
        payload: Payload text; hashed as UTF-8 bytes after normalization.

    Returns:
        Checksum in the range 0..65535.
    """
    crc = CRC16_INITIAL
    for byte in normalize(payload).encode("utf-8"):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ CRC16_POLYNOMIAL) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


def format_checksum(crc: int) -> str:
    """Format a checksum as 4 uppercase hex digits."""
    return f"{crc & 0xFFFF:04X}"


def strip_checksum(code: str) -> str:
    """Return the code without its trailing checksum.

    Raises:
        PayloadTooShortError: If the code has fewer than 4 characters.
    """
    code = normalize(code)
    if len(code) < CHECKSUM_LENGTH:
        raise PayloadTooShortError(f"Code too short to carry a checksum: {len(code)} chars")
    return code[:-CHECKSUM_LENGTH]


def extract_checksum(code: str) -> str:
    """Return the trailing 4-character checksum of a code.

    Raises:
        PayloadTooShortError: If the code has fewer than 4 characters.
    """
    code = normalize(code)
    if len(code) < CHECKSUM_LENGTH:
        raise PayloadTooShortError(f"Code too short to carry a checksum: {len(code)} chars")
    return code[-CHECKSUM_LENGTH:]


def add_or_replace_checksum(code: str) -> str:
    """Recompute the checksum and put it at the end of the code.

    The last 4 characters are always treated as the old checksum and dropped,
    so applying this twice yields the same code. Codes shorter than 4
    characters have nothing to drop.
    """
    code = normalize(code)
    payload = code[:-CHECKSUM_LENGTH] if len(code) >= CHECKSUM_LENGTH else code
    return payload + format_checksum(calculate(payload))


def validate(code: str) -> bool:
    """Check the trailing checksum against the payload (case-insensitive)."""
    code = normalize(code)
    if len(code) < CHECKSUM_LENGTH:
        return False
    expected = format_checksum(calculate(strip_checksum(code)))
    return extract_checksum(code).upper() == expected


def validate_structure(code: str) -> list[str]:
    """Check the EMV prefix and minimum length.

    Returns:
        List of structural errors, empty when the structure is valid.
    """
    code = normalize(code)
    errors = []
    if not code.startswith(PAYLOAD_PREFIX):
        errors.append(f"Code does not start with {PAYLOAD_PREFIX} (invalid EMV format)")
    if len(code) < MIN_CODE_LENGTH:
        errors.append(f"Code too short ({len(code)} chars, minimum {MIN_CODE_LENGTH})")
    return errors


def full_validate(code: str) -> ChecksumReport:
    """Validate structure and checksum of a payment code.

    A structurally invalid code is reported without checking its checksum.
    """
    code = normalize(code)
    report = ChecksumReport()

    structure_errors = validate_structure(code)
    if structure_errors:
        report.errors.extend(structure_errors)
        return report
    report.format_valid = True

    current = extract_checksum(code).upper()
    calculated = format_checksum(calculate(strip_checksum(code)))
    report.current_crc = current
    report.calculated_crc = calculated

    if current == calculated:
        report.crc_valid = True
        report.valid = True
    else:
        report.errors.append(f"Invalid checksum. Expected: {calculated}, found: {current}")

    return report


class PayloadChecksumCodec:
    """Injectable facade over the checksum functions.

    Example:
        ```python
        codec = PayloadChecksumCodec()
        code = codec.add_or_replace_checksum(raw_code)
        assert codec.validate(code)
        ```
    """

    calculate = staticmethod(calculate)
    format_checksum = staticmethod(format_checksum)
    strip_checksum = staticmethod(strip_checksum)
    extract_checksum = staticmethod(extract_checksum)
    add_or_replace_checksum = staticmethod(add_or_replace_checksum)
    validate = staticmethod(validate)
    validate_structure = staticmethod(validate_structure)
    full_validate = staticmethod(full_validate)

    def repair(self, code: str) -> tuple[str, ChecksumReport]:
        """Fix the checksum of a code and report on the result.

        Returns:
            Tuple of (repaired code, report for the repaired code).
        """
        repaired = add_or_replace_checksum(code)
        report = full_validate(repaired)
        if normalize(code) != repaired:
            logger.info(
                "Checksum repaired: %s -> %s",
                normalize(code)[-CHECKSUM_LENGTH:],
                repaired[-CHECKSUM_LENGTH:],
            )
        return repaired, report
