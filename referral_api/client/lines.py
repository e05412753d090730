"""
Newline framing for NDJSON response bodies
"""
import codecs
from typing import List, Union


class LineBuffer:
    """
    Split an arbitrarily chunked byte stream into complete lines.

    The trailing partial line is carried over to the next read, and UTF-8
    sequences split across reads are decoded once complete.
    """

    def __init__(self):
        self._carry = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        text = self._carry + chunk
        *lines, self._carry = text.split("\n")
        return [line for line in lines if line.strip()]

    def flush(self) -> List[str]:
        """Return whatever is left once the stream has ended"""
        tail = self._carry + self._decoder.decode(b"", final=True)
        self._carry = ""
        return [tail] if tail.strip() else []
