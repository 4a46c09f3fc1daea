"""
Deterministic alarm/notification ids for (reminder, offset) pairs.

The id is the only handle used to register and cancel alarms; nothing maps it
back to a reminder. Changing this derivation orphans every alarm registered
with the old ids, so it must stay bit-for-bit stable.
"""

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value > INT32_MAX else value


def java_string_hash(text: str) -> int:
    """31-based polynomial hash over UTF-16 code units, wrapped to int32."""
    data = text.encode("utf-16-be")
    result = 0
    for i in range(0, len(data), 2):
        result = (31 * result + ((data[i] << 8) | data[i + 1])) & 0xFFFFFFFF
    return _to_int32(result)


def java_long_hash(value: int) -> int:
    """Fold a 64-bit integer into int32 by XOR-ing its halves."""
    value &= 0xFFFFFFFFFFFFFFFF
    return _to_int32(value ^ (value >> 32))


def notification_id(reminder_id: str, offset_millis: int) -> int:
    """
    Derive the alarm id for one (reminder, offset) pair.

    The combined hash is made non-negative; the single value whose negation
    does not fit in int32 maps to INT32_MAX.
    """
    raw = java_string_hash(reminder_id) ^ java_long_hash(offset_millis)
    if raw == INT32_MIN:
        return INT32_MAX
    return abs(raw)
