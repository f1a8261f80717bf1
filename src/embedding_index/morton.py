"""Morton (Z-order) encoding of quantized coordinates into OrderingKeys.

Bits are interleaved round-robin across the D coordinates, most significant
bit first, producing a D*B-bit integer. Keys are serialized as zero-padded
lowercase hex of fixed width, so byte-lexicographic order of the strings is
identical to numeric order of the integers.

Nearby reduced vectors tend to receive numerically close keys. This is a
tendency only: points on either side of a curve discontinuity can be far
apart in key space, which range-scan search tolerates.
"""

from collections.abc import Sequence


def key_width(dims: int, bits: int) -> int:
    """Hex characters needed for a dims*bits-bit key."""
    return (dims * bits + 3) // 4


def max_key(dims: int, bits: int) -> int:
    return (1 << (dims * bits)) - 1


def interleave(values: Sequence[int], bits: int) -> int:
    """Interleave the bits of `values` into a single integer."""
    limit = 1 << bits
    for d, value in enumerate(values):
        if value < 0 or value >= limit:
            raise ValueError(f"Coordinate {d} value {value} does not fit in {bits} bits")

    key = 0
    for b in range(bits - 1, -1, -1):
        for value in values:
            key = (key << 1) | ((value >> b) & 1)
    return key


def deinterleave(key: int, dims: int, bits: int) -> list[int]:
    """Inverse of `interleave`."""
    if key < 0 or key > max_key(dims, bits):
        raise ValueError(f"Key {key:#x} out of range for {dims}x{bits} bits")

    values = [0] * dims
    position = dims * bits - 1
    for b in range(bits - 1, -1, -1):
        for d in range(dims):
            values[d] |= ((key >> position) & 1) << b
            position -= 1
    return values


def int_to_key(value: int, width: int) -> str:
    """Serialize an integer as a fixed-width lowercase hex key."""
    if value < 0:
        raise ValueError(f"Negative key values are not supported: {value}")
    text = format(value, "x")
    if len(text) > width:
        raise ValueError(f"Key {value:#x} exceeds {width} hex characters")
    return text.zfill(width)


def key_to_int(key: str) -> int:
    """Parse a hex key (with or without 0x prefix) into an integer."""
    return int(key.removeprefix("0x"), 16)


def encode(values: Sequence[int], bits: int) -> str:
    """Encode quantized coordinates into a hex OrderingKey.

    Example:
        >>> encode([1, 1], 4)
        '03'
        >>> encode([15, 15], 4)
        'ff'
    """
    if not values:
        raise ValueError("Cannot encode an empty coordinate vector")
    return int_to_key(interleave(values, bits), key_width(len(values), bits))


def decode(key: str, dims: int, bits: int) -> list[int]:
    """Decode a hex OrderingKey back into quantized coordinates.

    `decode(encode(v, bits), len(v), bits) == v` for every valid `v`.
    """
    return deinterleave(key_to_int(key), dims, bits)


def key_range(center: str, radius: int, dims: int, bits: int) -> tuple[str, str]:
    """Inclusive [center - radius, center + radius] bounds, clamped to the keyspace."""
    if radius < 0:
        raise ValueError(f"radius must be non-negative, got {radius}")
    width = key_width(dims, bits)
    middle = key_to_int(center)
    low = max(0, middle - radius)
    high = min(max_key(dims, bits), middle + radius)
    return int_to_key(low, width), int_to_key(high, width)
