"""Message headers as a mapping of names to raw byte values."""

from __future__ import annotations

from typing import Mapping, Optional


class Headers(dict):
    """Kafka message headers: header names mapped to byte values."""

    def merged(self, *args: Optional[Mapping[str, bytes]]) -> "Headers":
        """Return new headers holding these and every given mapping.

        Later mappings win over earlier ones and over the receiver. Neither
        the receiver nor the arguments are modified; ``None`` is skipped.
        """
        result = Headers(self)
        for headers in args:
            if headers:
                result.update(headers)
        return result