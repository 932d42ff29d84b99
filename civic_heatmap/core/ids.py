"""Opaque identifiers of the form <prefix>_<epoch ms>_<9 random chars>."""

import random
import string
import time

_ALPHABET = string.ascii_lowercase + string.digits


def now_ms() -> int:
    return int(time.time() * 1000)


def make_id(prefix: str, length: int = 9) -> str:
    suffix = "".join(random.choices(_ALPHABET, k=length))
    return f"{prefix}_{now_ms()}_{suffix}"
