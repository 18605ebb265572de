"""Owner identity handling.

Owners are identified by a 32-byte public key, written either as 64 hex
characters or as a bech32 ``npub`` string. Comparisons always go through
``normalize_pubkey`` so both spellings of one key are treated as equal.
"""
import re

import bech32

NPUB_PREFIX = 'npub'

_HEX_PUBKEY = re.compile(r'^[0-9a-fA-F]{64}$')


def normalize_pubkey(value):
    """Return the lowercase hex form of ``value`` or None if it is neither encoding."""
    if not value or not isinstance(value, str):
        return None

    value = value.strip()
    if _HEX_PUBKEY.match(value):
        return value.lower()

    hrp, data = bech32.bech32_decode(value)
    if hrp != NPUB_PREFIX or data is None:
        return None

    decoded = bech32.convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != 32:
        return None

    return bytes(decoded).hex()
