from __future__ import annotations

import cbor2

# Well above any Reticulum link MDU; anything larger is not a single packet.
MAX_PACKET_BYTES = 64 * 1024


def encode(obj) -> bytes:
    return cbor2.dumps(obj, canonical=True)


def decode(b: bytes):
    if len(b) > MAX_PACKET_BYTES:
        raise ValueError(f"packet too large ({len(b)} bytes)")
    return cbor2.loads(b)
