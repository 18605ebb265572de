"""Shared test helpers."""

import bech32

from identity import NPUB_PREFIX, normalize_pubkey


def encode_npub(hex_pubkey):
    """npub spelling of a hex key, for exercising both owner encodings."""
    if normalize_pubkey(hex_pubkey) != (hex_pubkey or '').lower():
        raise ValueError('Expected a 64 character hex public key')

    data = bech32.convertbits(bytes.fromhex(hex_pubkey), 8, 5)
    return bech32.bech32_encode(NPUB_PREFIX, data)
