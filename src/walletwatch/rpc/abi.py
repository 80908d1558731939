"""Minimal ABI encoding/decoding for the read-only calls used here."""

# Function selectors
NAME_SELECTOR = "0x06fdde03"
SYMBOL_SELECTOR = "0x95d89b41"
DECIMALS_SELECTOR = "0x313ce567"
BALANCE_OF_SELECTOR = "0x70a08231"
SUPPORTS_INTERFACE_SELECTOR = "0x01ffc9a7"
IMPLEMENTATION_SELECTOR = "0x5c60da1b"

WORD = 64  # hex characters per 32-byte word


def encode_address(address: str) -> str:
    """Left-pad an address to one ABI word (no 0x prefix)."""
    return address.lower().replace("0x", "").zfill(WORD)


def encode_bytes4(value: str) -> str:
    """Right-pad a bytes4 value to one ABI word (no 0x prefix)."""
    return value.lower().replace("0x", "").ljust(WORD, "0")


def _strip(data: str) -> str:
    return data[2:] if data.startswith("0x") else data


def _words(data: str) -> list[str]:
    body = _strip(data)
    return [body[i:i + WORD] for i in range(0, len(body), WORD)]


def decode_uint(data: str) -> int:
    """Decode the first word as an unsigned integer."""
    words = _words(data)
    if not words or not words[0]:
        raise ValueError("Empty return data")
    return int(words[0], 16)


def decode_bool(data: str) -> bool:
    return decode_uint(data) != 0


def decode_address(data: str) -> str:
    """Decode the first word as an address."""
    words = _words(data)
    if not words or len(words[0]) < 40:
        raise ValueError("Return data too short for an address")
    return "0x" + words[0][-40:]


def decode_string(data: str) -> str:
    """Decode a string return value.

    Accepts the dynamic ``string`` encoding and the legacy ``bytes32``
    encoding some older tokens use for name() and symbol().
    """
    body = _strip(data)
    if not body:
        raise ValueError("Empty return data")

    if len(body) == WORD:
        raw = bytes.fromhex(body).rstrip(b"\x00")
        return raw.decode("utf-8", errors="replace")

    offset = int(body[:WORD], 16) * 2
    length = int(body[offset:offset + WORD], 16) * 2
    start = offset + WORD
    raw = bytes.fromhex(body[start:start + length])
    return raw.decode("utf-8", errors="replace").strip("\x00")


def decode_uint_array(data: str) -> list[int]:
    """Decode a dynamic ``uint256[]`` return value."""
    body = _strip(data)
    if not body:
        raise ValueError("Empty return data")

    offset = int(body[:WORD], 16) * 2
    length = int(body[offset:offset + WORD], 16)
    start = offset + WORD
    return [int(body[start + i * WORD:start + (i + 1) * WORD], 16) for i in range(length)]
