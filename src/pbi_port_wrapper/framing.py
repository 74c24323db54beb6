"""Message boundary detection for the unframed XMLA byte stream.

XMLA over plain TCP has no length prefix we can trust, so we hold bytes back
until the SOAP envelope closes. Two closing tags are in circulation for the
same protocol family: a bare </Envelope> and the prefixed
</SOAP-ENV:Envelope>. Either one ends a message.
"""

ENCODING = "utf-8"

ENVELOPE_END_MARKERS: tuple[str, ...] = (
    "</Envelope>",
    "</SOAP-ENV:Envelope>",
)


def decode_message(data: bytes | bytearray) -> str:
    """Decode accumulated bytes as text. Invalid sequences become U+FFFD."""
    return bytes(data).decode(ENCODING, errors="replace")


def encode_message(text: str) -> bytes:
    return text.encode(ENCODING)


def has_envelope_end(text: str, markers: tuple[str, ...] = ENVELOPE_END_MARKERS) -> bool:
    """True if any closing marker appears anywhere in ``text`` (case-sensitive)."""
    return any(marker in text for marker in markers)


class MessageAccumulator:
    """Growable buffer for one connection's in-progress request.

    Holds either nothing or the bytes of a message whose envelope hasn't
    closed yet. There is no size cap: a peer that never closes its envelope
    grows this without bound.
    """

    def __init__(self, markers: tuple[str, ...] = ENVELOPE_END_MARKERS):
        self._markers = markers
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def __bool__(self) -> bool:
        return bool(self._buffer)

    def append(self, data: bytes) -> None:
        self._buffer.extend(data)

    def text(self) -> str:
        """The whole buffer, decoded."""
        return decode_message(self._buffer)

    def is_complete(self) -> bool:
        return has_envelope_end(self.text(), self._markers)

    def take(self) -> bytes:
        """Return the buffered bytes and reset to empty."""
        data = bytes(self._buffer)
        self._buffer.clear()
        return data

    def clear(self) -> None:
        self._buffer.clear()
