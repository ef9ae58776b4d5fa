"""
Address text sanitation and validation.

Chat input arrives with stray whitespace, quotes, zero-width characters or a
doubled ``0x`` prefix. ``clean_address_text`` strips that noise;
``validate_address`` enforces the canonical 20-byte format and EIP-55
checksum when the input is mixed-case.
"""

import re

from web3 import Web3

from shared.constants import EXAMPLE_ADDRESS

_NON_ADDRESS_CHARS = re.compile(r"[^a-fA-F0-9x]")
_LEADING_PREFIX = re.compile(r"^(0x)+")
_HEX_BODY = re.compile(r"^[a-fA-F0-9]{40}$")


class AddressValidationError(ValueError):
    """Raised when token address text cannot be turned into a valid address."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.example = EXAMPLE_ADDRESS

    def user_message(self) -> str:
        return f"Address error: {self}\nExample of a valid address: {self.example}"


def clean_address_text(raw: str) -> str:
    """Drop everything but hex digits and ``x``, then normalise to a single ``0x`` prefix."""
    cleaned = _NON_ADDRESS_CHARS.sub("", raw)
    cleaned = _LEADING_PREFIX.sub("", cleaned)
    return "0x" + cleaned


def validate_address(text: str) -> str:
    """Return the checksummed form of ``text`` or raise AddressValidationError."""
    if not text.startswith("0x") or len(text) != 42:
        raise AddressValidationError(
            f"invalid address length: {len(text)} characters (expected 42)"
        )
    body = text[2:]
    if not _HEX_BODY.match(body):
        raise AddressValidationError("address contains non-hex characters")
    # Single-case input carries no checksum; mixed case must match EIP-55
    if body != body.lower() and body != body.upper():
        if not Web3.is_checksum_address(text):
            raise AddressValidationError("address checksum mismatch")
    return Web3.to_checksum_address(text)
