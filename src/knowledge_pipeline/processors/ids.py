MAX_ID_LENGTH = 64
HASH_LENGTH = 8


def _string_hash(value: str) -> str:
    """31-multiplier rolling hash over the full string, as 8 hex digits."""
    h = 0
    for char in value:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x").zfill(HASH_LENGTH)


def ensure_safe_id(proposed_id: str) -> str:
    """Shorten ids longer than the vector index allows, keeping them unique and stable."""
    if len(proposed_id) <= MAX_ID_LENGTH:
        return proposed_id
    prefix = proposed_id[: MAX_ID_LENGTH - HASH_LENGTH - 1]
    return f"{prefix}_{_string_hash(proposed_id)}"
