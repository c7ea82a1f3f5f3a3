"""Follow a file and yield each appended line."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path

from marvin_drone.models.events import TailLine
from marvin_drone.sources.base import BaseLocalSource

logger = logging.getLogger("marvin_drone.sources.tail")


class FileTailSource(BaseLocalSource):
    """Yields lines appended to *path*, like ``tail -f``.

    Reading starts at the current end of the file unless *from_start* is
    set. Only complete (newline-terminated) lines are yielded. A truncated
    file is read again from the top. The sequence ends when the file is
    removed or replaced, and it cannot be restarted after that.

    Example:
        source = FileTailSource("/var/log/direwolf.log")
        async for event in source.events():
            print(event.payload.text)
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        poll_interval: float = 0.25,
        from_start: bool = False,
        encoding: str = "utf-8",
    ) -> None:
        super().__init__()
        self._path = Path(path)
        self._poll_interval = poll_interval
        self._from_start = from_start
        self._encoding = encoding

    @property
    def source_id(self) -> str:
        return f"tail:{self._path}"

    @property
    def path(self) -> Path:
        return self._path

    async def _produce(self) -> AsyncIterator[TailLine]:
        handle = await asyncio.to_thread(open, self._path, "rb")
        logger.info("Tailing file %s", self._path)
        try:
            if not self._from_start:
                handle.seek(0, os.SEEK_END)
            inode = os.fstat(handle.fileno()).st_ino
            partial = b""
            while not self._should_stop():
                data = await asyncio.to_thread(handle.read)
                if data:
                    *lines, partial = (partial + data).split(b"\n")
                    for raw in lines:
                        yield TailLine(path=str(self._path), text=self._decode(raw))
                    continue

                try:
                    st = os.stat(self._path)
                except FileNotFoundError:
                    logger.info("Tailed file %s was removed", self._path)
                    return
                if st.st_ino != inode:
                    logger.info("Tailed file %s was replaced", self._path)
                    return
                if st.st_size < handle.tell():
                    logger.info("Tailed file %s was truncated, rewinding", self._path)
                    handle.seek(0)
                    partial = b""
                    continue
                await self._sleep(self._poll_interval)
        finally:
            handle.close()

    def _decode(self, raw: bytes) -> str:
        return raw.rstrip(b"\r").decode(self._encoding, errors="replace")
