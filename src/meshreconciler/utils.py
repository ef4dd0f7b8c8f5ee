from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable, Optional

import numpy as np

if TYPE_CHECKING:
    import numpy.typing as npt


def decode_char_rows(chars: npt.ArrayLike) -> list[str]:
    """
    Decode a netCDF char array (dtype 'S1') into one string per row.

    Arrays with more than two dimensions are flattened over all leading axes,
    so a (num_qa_rec, 4, len_string) table becomes num_qa_rec * 4 strings.
    """
    a = np.asarray(chars)
    if a.ndim == 0:
        return [_clean(a.item())]
    if a.ndim == 1:
        a = a.reshape(1, -1)
    rows = a.reshape(-1, a.shape[-1])

    out = []
    for row in rows:
        # row is like [b'H', b'E', b'X', b'8', b'', ...]
        out.append(_clean(b"".join(bytes(c) for c in row)))
    return out


def _clean(raw: bytes | str) -> str:
    text = raw.decode("utf-8", "ignore") if isinstance(raw, bytes) else str(raw)
    return text.split("\x00", 1)[0].strip()


def find_name(names: Iterable[str], pattern: str) -> Optional[int]:
    """
    Return the 1-based position of the first name matching `pattern`
    (case-insensitive full match), or None.
    """
    regex = re.compile(pattern, re.IGNORECASE)
    for i, name in enumerate(names, start=1):
        if regex.fullmatch(name.strip()):
            return i
    return None


def vector_magnitudes(vectors: npt.ArrayLike) -> np.ndarray:
    """Row-wise Euclidean norm of an (n, d) array."""
    v = np.asarray(vectors, dtype=np.float64)
    if v.size == 0:
        return np.zeros(0, dtype=np.float64)
    return np.linalg.norm(v.reshape(len(v), -1), axis=1)
