"""Reply accumulation for a single exchange.

Firmware replies can arrive split over several reads, so bytes are collected
here until a complete reply is present. A reply is only considered complete
on a line boundary; what counts as complete depends on the exchange policy:

- strip-ack: a terminated line starts with the ``ok`` token. That token
  is removed from the returned text.
- raw-ack: a terminated line has non-empty content. The text is returned
  as received (trimmed), ``ok`` included.
"""

from typing import Optional

from .protocol import ACK_RE, ENCODING


class ResponseBuffer:

    def __init__(self):
        self._data = bytearray()

    def __len__(self) -> int:
        return len(self._data)

    def feed(self, chunk: bytes) -> None:
        self._data.extend(chunk)

    @property
    def text(self) -> str:
        return self._data.decode(ENCODING, errors="replace")

    def clear(self) -> bytes:
        """Drop everything buffered and return it."""
        dropped = bytes(self._data)
        self._data.clear()
        return dropped

    def take(self, expect_ack: bool) -> Optional[str]:
        """Return the completed reply and consume it, or None if still incomplete."""
        end = self._data.rfind(b"\n")
        if end < 0:
            return None

        complete = self._data[:end + 1].decode(ENCODING, errors="replace")
        if expect_ack:
            if not complete.strip():
                return None
            reply = complete.strip()
        else:
            if not ACK_RE.search(complete):
                return None
            reply = ACK_RE.sub("", complete, count=1).strip()

        del self._data[:end + 1]
        return reply
