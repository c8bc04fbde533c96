import asyncio

import pytest

from iperfer import ByteStream


class RecordingWriter:
    """Stands in for asyncio.StreamWriter; keeps everything written."""

    def __init__(self, on_write=None):
        self.writes = []
        self.eof = False
        self.closed = False
        self._on_write = on_write

    def write(self, data):
        self.writes.append(bytes(data))
        if self._on_write is not None:
            self._on_write(data)

    async def drain(self):
        pass

    def can_write_eof(self):
        return True

    def write_eof(self):
        self.eof = True

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def get_extra_info(self, name, default=None):
        return default

    @property
    def data(self):
        return b"".join(self.writes)


def make_stream(pieces=(), eof=True, writer=None, io_timeout=None):
    """Build a ByteStream whose reader yields `pieces`. Call inside a loop."""
    reader = asyncio.StreamReader()
    for piece in pieces:
        reader.feed_data(piece)
    if eof:
        reader.feed_eof()
    return ByteStream(reader, writer or RecordingWriter(), io_timeout)


@pytest.fixture
def run():
    def _run(coro, timeout=10):
        return asyncio.run(asyncio.wait_for(coro, timeout))
    return _run
