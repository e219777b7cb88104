from __future__ import annotations

import json
import logging
from collections import deque
from typing import TYPE_CHECKING

from .exceptions import InvalidJSONError, MissingBoundaryError, MultipartError, StreamClosedError
from .multipart import MultipartParser, parse_options_header

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import AsyncIterator, Mapping
    from types import TracebackType
    from typing import Any, TypedDict

    from multidict import CIMultiDictProxy

    class ReaderConfig(TypedDict, total=False):
        CHUNK_SIZE: int
        MAX_HEADER_SIZE: float
        HEADER_ENCODING: str
        STRICT_HEADERS: bool


# Get logger for this module.
logger = logging.getLogger(__name__)

# Events queued by the parser callbacks, consumed by the reader.
PART_BEGIN = 0
PART_DATA = 1
PART_END = 2
END = 3


def _get_header(headers: Mapping[str, Any], name: str) -> Any:
    value = headers.get(name)
    if value is not None:
        return value

    # Plain dicts are case-sensitive, so look a bit harder.
    for key, value in headers.items():
        if isinstance(key, bytes):
            key = key.decode("latin-1")
        if key.lower() == name:
            return value
    return None


def extract_boundary(headers: Mapping[str, Any] | str | bytes | None) -> str | None:
    """Finds the multipart boundary in a ``Content-Type`` value.

    ``headers`` is either a header mapping holding a ``Content-Type`` header
    or the header value itself.  Both ``boundary="value"`` and
    ``boundary=value`` are understood.  Returns None if there is no boundary.
    """
    if headers is None:
        return None

    if isinstance(headers, (str, bytes)):
        content_type = headers
    else:
        content_type = _get_header(headers, "content-type")

    _, options = parse_options_header(content_type)
    return options.get("boundary") or None


def _resolve_body(source: Any) -> Any:
    """Returns the object to pull chunks from for a given source.

    Async iterables of bytes and objects with an async ``read(n)`` are used
    as-is.  Request and response objects from the common HTTP libraries are
    unwrapped to their body stream.
    """
    if hasattr(source, "__aiter__"):
        return source

    # httpx.Response
    aiter_bytes = getattr(source, "aiter_bytes", None)
    if callable(aiter_bytes):
        return aiter_bytes()

    # starlette.requests.Request
    stream = getattr(source, "stream", None)
    if callable(stream):
        return stream()

    # aiohttp.ClientResponse
    content = getattr(source, "content", None)
    if hasattr(content, "read") or hasattr(content, "__aiter__"):
        return content

    if hasattr(source, "read"):
        return source

    raise TypeError("Cannot read a multipart body from %r" % (source,))


class PartStream:
    """The content of a single part, as an async iterator of byte chunks.

    This is a view, not a copy: each read asks the owning
    :class:`MultipartReader` to advance the one upstream source.  Once the
    part is exhausted further reads return nothing.
    """

    def __init__(self, reader: MultipartReader) -> None:
        self._reader = reader
        self._eof = False
        self._cancelled = False

    def __aiter__(self) -> PartStream:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read_chunk()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def read_chunk(self) -> bytes | None:
        """Returns the next chunk of content, or None at the end of the part."""
        if self._cancelled:
            raise StreamClosedError("The reader was closed before this part was read")
        if self._eof:
            return None
        return await self._reader._read_part_chunk(self)

    def at_eof(self) -> bool:
        return self._eof

    def _finish(self) -> None:
        self._eof = True

    def _cancel(self) -> None:
        self._cancelled = True


class Part:
    """A part of a multipart body.

    Holds the part's headers and a stream of its content.  The content can be
    iterated chunk by chunk with ``async for``, or collected with
    :meth:`bytes`, :meth:`text` or :meth:`json`.

    Content can only be consumed once.  After the stream is exhausted,
    :meth:`bytes` returns ``b""``, :meth:`text` returns ``""`` and
    :meth:`json` raises :class:`InvalidJSONError`.
    """

    def __init__(self, headers: CIMultiDictProxy[str], stream: PartStream) -> None:
        self._headers = headers
        self._stream = stream

    @property
    def headers(self) -> CIMultiDictProxy[str]:
        """The part's headers.  Lookups are case-insensitive."""
        return self._headers

    @property
    def stream(self) -> PartStream:
        """The raw content stream handle."""
        return self._stream

    @property
    def type(self) -> str | None:
        """The value of the Content-Type header, or None if it's missing."""
        return self._headers.get("content-type")

    @property
    def size(self) -> int | None:
        """The value of the Content-Length header, or None if it's missing or
        not an integer.
        """
        content_length = self._headers.get("content-length")
        if content_length is None:
            return None
        try:
            return int(content_length)
        except ValueError:
            logger.warning("Invalid Content-Length header: %r", content_length)
            return None

    @property
    def name(self) -> str | None:
        """The ``name`` parameter of the Content-Disposition header."""
        return self._disposition_param("name")

    @property
    def filename(self) -> str | None:
        """The ``filename`` parameter of the Content-Disposition header."""
        return self._disposition_param("filename")

    def _disposition_param(self, key: str) -> str | None:
        _, options = parse_options_header(self._headers.get("content-disposition"))
        return options.get(key)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._stream

    def at_eof(self) -> bool:
        return self._stream.at_eof()

    async def bytes(self) -> bytes:
        """Reads the rest of the content and returns it."""
        return b"".join([chunk async for chunk in self._stream])

    async def read(self) -> bytes:
        """Alias of :meth:`bytes`."""
        return await self.bytes()

    async def text(self, encoding: str = "utf-8", errors: str = "replace") -> str:
        """Reads the rest of the content and decodes it."""
        data = await self.bytes()
        return data.decode(encoding, errors)

    async def json(self) -> Any:
        """Reads the rest of the content and parses it as JSON."""
        text = await self.text()
        try:
            return json.loads(text)
        except json.JSONDecodeError as err:
            raise InvalidJSONError("Part content is not valid JSON: %s" % err) from err

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.type!r}, name={self.name!r}, filename={self.filename!r})"


class MultipartReader:
    """Reads a multipart body from an async source as a sequence of
    :class:`Part` objects.

    The reader owns the source: it pulls one chunk at a time and only when
    the chunks it already has can't produce what was asked for.  Parts must
    be read in order.  Moving on to the next part discards whatever is left
    of the previous one.

    Use it with ``async for``, ideally inside ``async with`` so the source is
    released if iteration stops early::

        async with MultipartReader(body, "BOUNDARY") as reader:
            async for part in reader:
                print(part.type, await part.text())

    :param source: An async iterable of bytes, an object with an async
                   ``read(n)`` method, or an aiohttp, httpx or Starlette
                   request/response.

    :param boundary: The multipart boundary.  If not given, it's taken from
                     the Content-Type in ``headers``.

    :param headers: Headers to take the boundary from.  Defaults to
                    ``source.headers`` when the source has them.

    :param config: Configuration options, see :attr:`DEFAULT_CONFIG`.
    """

    #: This is the default configuration for our reader.
    DEFAULT_CONFIG: ReaderConfig = {
        "CHUNK_SIZE": 1048576,
        "MAX_HEADER_SIZE": 64 * 1024,
        "HEADER_ENCODING": "utf-8",
        "STRICT_HEADERS": False,
    }

    def __init__(
        self,
        source: Any,
        boundary: str | bytes | None = None,
        *,
        headers: Mapping[str, Any] | None = None,
        config: ReaderConfig = {},
    ) -> None:
        self.logger = logging.getLogger(__name__)

        self.config: ReaderConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)

        if headers is None:
            headers = getattr(source, "headers", None)
        if boundary is None and headers is not None:
            boundary = extract_boundary(headers)
        if not boundary:
            self.logger.warning("No boundary given")
            raise MissingBoundaryError("No boundary given")
        self.boundary = boundary

        self._source = _resolve_body(source)
        # Streams such as aiohttp's StreamReader can also be iterated, but only
        # line by line, so read(n) is preferred.
        self._iterator = None if hasattr(self._source, "read") else self._source.__aiter__()

        self._events: deque[tuple[int, Any]] = deque()
        self._part: Part | None = None
        self._error: MultipartError | None = None
        self._finished = False
        self._exhausted = False
        self._reading = False
        self._released = False
        self._closed = False
        self.bytes_received = 0

        def on_part_begin(headers: CIMultiDictProxy[str]) -> None:
            self._events.append((PART_BEGIN, headers))

        def on_part_data(data: bytes, start: int, end: int) -> None:
            self._events.append((PART_DATA, data[start:end]))

        def on_part_end() -> None:
            self._events.append((PART_END, None))

        def on_end() -> None:
            self._finished = True
            self._events.append((END, None))

        self._parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": on_part_begin,
                "on_part_data": on_part_data,
                "on_part_end": on_part_end,
                "on_end": on_end,
            },
            max_header_size=self.config["MAX_HEADER_SIZE"],
            header_encoding=self.config["HEADER_ENCODING"],
            strict_headers=self.config["STRICT_HEADERS"],
        )

    def at_eof(self) -> bool:
        """True once the terminating boundary was found or the reader closed."""
        return self._closed or (self._finished and not self._events)

    async def _read_upstream(self) -> bytes:
        if self._iterator is None:
            return await self._source.read(self.config["CHUNK_SIZE"])

        while True:
            try:
                chunk = await self._iterator.__anext__()
            except StopAsyncIteration:
                return b""
            # Empty chunks don't mean anything for an iterator.
            if chunk:
                return bytes(chunk)

    async def _pull(self) -> bool:
        """Reads one chunk from the source and feeds it to the parser.

        Returns False if there is nothing left to read.  Parse errors are
        raised here, and again on every later pull.
        """
        if self._error is not None:
            raise self._error
        if self._closed:
            raise StreamClosedError("The reader is closed")
        if self._finished or self._exhausted:
            return False
        if self._reading:
            raise RuntimeError("Called while another coroutine is already waiting for incoming data")

        self._reading = True
        try:
            chunk = await self._read_upstream()
        finally:
            self._reading = False

        try:
            if not chunk:
                self.logger.debug("Source exhausted after %d bytes", self.bytes_received)
                self._exhausted = True
                self._parser.finalize()
            else:
                self.bytes_received += len(chunk)
                self.logger.debug("Read %d bytes from source", len(chunk))
                self._parser.write(chunk)
        except MultipartError as err:
            self._error = err
            raise

        if self._finished:
            # Anything after the terminator is never read.
            await self._release()
        return True

    async def _read_part_chunk(self, stream: PartStream) -> bytes | None:
        while True:
            if self._events:
                kind, value = self._events[0]
                if kind == PART_DATA:
                    self._events.popleft()
                    return value
                if kind == PART_END:
                    self._events.popleft()
                # Either way, this part is over.
                stream._finish()
                return None

            if not await self._pull():
                stream._finish()
                return None

    def __aiter__(self) -> MultipartReader:
        return self

    async def __anext__(self) -> Part:
        part = self._part
        if part is not None and not part.at_eof() and not self._closed:
            self.logger.debug("Discarding unread content of %r", part)
            async for _ in part.stream:
                pass
        self._part = None

        while True:
            if self._closed:
                raise StopAsyncIteration

            if self._events:
                kind, value = self._events.popleft()
                if kind == PART_BEGIN:
                    self._part = Part(value, PartStream(self))
                    return self._part
                if kind == END:
                    await self.aclose()
                    raise StopAsyncIteration
                continue

            if not await self._pull():
                await self.aclose()
                raise StopAsyncIteration

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True

        aclose = getattr(self._iterator, "aclose", None)
        if aclose is None:
            aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            self.logger.debug("Closing source %r", self._source)
            await aclose()

    async def aclose(self) -> None:
        """Stops reading.  The source is released and a part that's still
        being read is cancelled: reading it raises :class:`StreamClosedError`.
        """
        if self._closed:
            return
        self._closed = True

        part = self._part
        if part is not None and not part.at_eof():
            part.stream._cancel()
        self._events.clear()
        await self._release()

    async def __aenter__(self) -> MultipartReader:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(boundary={self.boundary!r})"


def create_multipart_reader(
    headers: Mapping[str, Any], source: Any, config: ReaderConfig = {}
) -> MultipartReader:
    """This function is a helper function to aid in creating a reader from a
    set of HTTP headers.  The boundary is taken from the ``Content-Type``
    header.

    :param headers: A dictionary-like object of HTTP headers.  The only
                    required header is Content-Type.

    :param source: The body to read, see :class:`MultipartReader`.

    :param config: Configuration options for the reader.
    """
    content_type = _get_header(headers, "content-type")
    if content_type is None:
        logger.warning("No Content-Type header given")
        raise ValueError("No Content-Type header given!")

    main_type, _ = parse_options_header(content_type)
    if not main_type.startswith("multipart/"):
        logger.warning("Content-Type %r is not a multipart type", main_type)

    return MultipartReader(source, extract_boundary(content_type), config=config)


def iterate_multipart(
    source: Any,
    boundary: str | bytes | None = None,
    *,
    headers: Mapping[str, Any] | None = None,
    config: ReaderConfig = {},
) -> MultipartReader:
    """Returns a reader that yields the parts of a multipart body.

    This is a shortcut for ``MultipartReader(source, boundary, ...)``; the
    boundary is required unless it can be taken from ``headers`` or from the
    source's own headers.
    """
    return MultipartReader(source, boundary, headers=headers, config=config)
