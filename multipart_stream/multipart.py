from __future__ import annotations

import logging
from email.message import Message
from email.utils import collapse_rfc2231_value
from enum import IntEnum
from typing import TYPE_CHECKING, cast

from multidict import CIMultiDict, CIMultiDictProxy

from .exceptions import MalformedHeaderError, MissingBoundaryError, UnexpectedEndOfStreamError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable
    from typing import Any, Literal, TypeAlias, TypedDict

    class MultipartCallbacks(TypedDict, total=False):
        on_part_begin: Callable[[CIMultiDictProxy[str]], None]
        on_part_data: Callable[[bytes, int, int], None]
        on_part_end: Callable[[], None]
        on_end: Callable[[], None]

    CallbackName: TypeAlias = Literal["part_begin", "part_data", "part_end", "end"]


# Get logger for this module.
logger = logging.getLogger(__name__)


class MultipartState(IntEnum):
    """Multipart parser states.

    These are used to keep track of the parser's position between calls to
    :meth:`MultipartParser.write`.
    """

    SCANNING = 0
    DELIVERING = 1
    DONE = 2


CRLF = b"\r\n"
DOUBLE_CRLF = b"\r\n\r\n"
HYPHENS = b"--"


def parse_options_header(value: str | bytes | None) -> tuple[str, dict[str, str]]:
    """Parses a header value with parameters, such as a Content-Type or a
    Content-Disposition header, into a value in the following format:
        (value, {parameters})

    The main value is lower-cased, parameter names are lower-cased and
    parameter values are unquoted.
    """
    if not value:
        return ("", {})

    if isinstance(value, bytes):
        value = value.decode("latin-1")

    # If we have no options, return the string as-is.
    if ";" not in value:
        return (value.lower().strip(), {})

    # The legacy header parsing lives on in the email module.
    message = Message()
    message["content-type"] = value
    params = message.get_params()
    assert params, "At least the main value should be present"
    main_value = params.pop(0)[0].lower().strip()
    options: dict[str, str] = {}
    for key, param in params:
        # RFC 2231 values come back as (charset, language, value).
        if isinstance(param, tuple):
            param = collapse_rfc2231_value(param)

        # If the value is a filename, we need to fix a bug on IE6 that sends
        # the full file path instead of the filename.
        if key == "filename":
            if param[1:3] == ":\\" or param[:2] == "\\\\":
                param = param.split("\\")[-1]

        options[key] = param
    return main_value, options


def find_token(haystack: bytes, needle: bytes, start: int = 0) -> int:
    """Returns the index of the first occurrence of ``needle`` in ``haystack``
    at or after ``start``, or -1 if there is none.

    A needle that is longer than what remains of the haystack simply isn't
    found.
    """
    if start < 0:
        start = 0
    if len(needle) > len(haystack) - start:
        return -1
    return haystack.find(needle, start)


def parse_headers(data: bytes, encoding: str = "utf-8", strict: bool = False) -> CIMultiDictProxy[str]:
    """Parses a raw header block into a case-insensitive mapping.

    The block is a series of ``Key: Value`` lines separated by CRLF, without
    the blank line that ends it.  An empty block gives an empty mapping.

    When a key is repeated the later value wins, but the key keeps the
    position of its first occurrence.

    In the default best-effort mode undecodable bytes are replaced and lines
    without a colon are skipped.  With ``strict=True`` both raise
    :class:`MalformedHeaderError`.
    """
    if not data:
        return CIMultiDictProxy(CIMultiDict())

    try:
        text = data.decode(encoding, "strict" if strict else "replace")
    except UnicodeDecodeError as err:
        msg = "Could not decode header block as %s at offset %d" % (encoding, err.start)
        logger.warning(msg)
        e = MalformedHeaderError(msg)
        e.offset = err.start
        raise e from err

    fields: dict[str, tuple[str, str]] = {}
    for line in text.split("\r\n"):
        if not line:
            continue

        name, sep, value = line.partition(":")
        name = name.strip()
        if not sep or not name:
            if strict:
                msg = "Malformed header line %r" % (line,)
                logger.warning(msg)
                raise MalformedHeaderError(msg)
            logger.warning("Skipping malformed header line %r", line)
            continue

        # Keyed by the lower-cased name so a repeat keeps its first position.
        fields[name.lower()] = (name, value.strip())

    return CIMultiDictProxy(CIMultiDict(fields.values()))


class BaseParser:
    """Base class for parsers that report what they find through callbacks.

    Callbacks are stored in ``self.callbacks`` under their ``on_`` name, for
    example ``on_part_data``.  Missing callbacks are simply not called.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)
        self.callbacks: MultipartCallbacks = {}

    def callback(self, name: CallbackName, *args: Any) -> None:
        """Calls the callback registered under ``name``, if any.

        Data callbacks are called as ``func(data, start, end)`` and are
        skipped when the slice they describe is empty.
        """
        on_name = "on_" + name
        func = self.callbacks.get(on_name)
        if func is None:
            return
        func = cast("Callable[..., Any]", func)

        if len(args) == 3:
            data, start, end = args
            if start == end:
                return
            self.logger.debug("Calling %s with data[%d:%d]", on_name, start, end)
            func(data, start, end)
        else:
            self.logger.debug("Calling %s", on_name)
            func(*args)

    def set_callback(self, name: CallbackName, new_func: Callable[..., Any] | None) -> None:
        """Update the function for a callback.  Removes it from the callbacks
        dict if ``new_func`` is None.
        """
        if new_func is None:
            self.callbacks.pop("on_" + name, None)  # type: ignore[misc]
        else:
            self.callbacks["on_" + name] = new_func  # type: ignore[literal-required]

    def __repr__(self) -> str:
        return "%s()" % self.__class__.__name__


class MultipartParser(BaseParser):
    """This class is a streaming multipart parser.  It does no I/O: chunks are
    handed to :meth:`write` in order and :meth:`finalize` is called once the
    source is exhausted.

    Parts are reported through the following callbacks:

    ============== ==================================================
    Callback Name  Parameters and Description
    -------------- --------------------------------------------------
    on_part_begin  headers: a delimiter and its full header block were
                   found
    on_part_data   data, start, end: content bytes of the open part
    on_part_end    None: the open part's content is complete
    on_end         None: the terminating boundary was found, or the
                   source ended cleanly before any part
    ============== ==================================================

    Content is forwarded as soon as it can no longer be the start of a
    boundary, so at most ``len(boundary) + 5`` bytes are held back between
    calls to :meth:`write`.  A header block is held back in full until its
    closing blank line arrives.

    :param boundary: The multipart boundary, without the leading ``--``.

    :param callbacks: A dictionary of callbacks.  See above.

    :param max_header_size: The maximum size of a single header block.

    :param header_encoding: The encoding used to decode header blocks.

    :param strict_headers: Raise on undecodable or malformed header lines
                           instead of skipping them.
    """

    def __init__(
        self,
        boundary: bytes | str,
        callbacks: MultipartCallbacks = {},
        max_header_size: float = float("inf"),
        header_encoding: str = "utf-8",
        strict_headers: bool = False,
    ) -> None:
        super().__init__()
        if not boundary:
            self.logger.warning("No boundary given")
            raise MissingBoundaryError("No boundary given")

        self.callbacks = callbacks.copy()
        self.state = MultipartState.SCANNING
        self.max_header_size = max_header_size
        self.header_encoding = header_encoding
        self.strict_headers = strict_headers

        if isinstance(boundary, str):
            boundary = boundary.encode("latin-1")
        self.boundary = boundary

        # The two forms of the boundary that we search for.  Both start with
        # the same dash-boundary, so we search for that and look at what
        # follows it.
        self.dash_boundary = HYPHENS + boundary
        self.delimiter = self.dash_boundary + CRLF
        self.terminator = self.dash_boundary + HYPHENS

        # The longest token we can find while delivering content is the
        # terminator preceded by a CRLF.  Anything shorter than that at the
        # end of a chunk might be the start of one.
        self.margin_size = len(CRLF + self.terminator) - 1

        self._margin = b""
        self._awaiting_headers = False
        self._skipped_epilogue = False

    def write(self, data: bytes) -> int:
        """Write some data to the parser, which will perform size verification,
        parse the data, and call the callbacks.

        :param data: a bytestring
        :return: the number of bytes processed
        """
        data_len = len(data)
        if self.state == MultipartState.DONE:
            self._skip_epilogue(data, 0)
            return data_len

        # Prepend whatever we held back last time, since a boundary or header
        # block might straddle the two chunks.
        if self._margin:
            buffer = self._margin + data
            self._margin = b""
        else:
            buffer = bytes(data)

        self._internal_write(buffer)
        return data_len

    def _find_boundary(self, buffer: bytes, start: int) -> tuple[int, bool]:
        """Finds the next complete delimiter or terminator in ``buffer``.

        Returns the index of its leading dash-boundary and whether it is the
        terminator.  The index is -1 if none was found.
        """
        dash_boundary = self.dash_boundary
        after = len(dash_boundary)

        index = find_token(buffer, dash_boundary, start)
        while index >= 0:
            suffix = buffer[index + after : index + after + 2]
            if suffix == CRLF:
                return index, False
            elif suffix == HYPHENS:
                return index, True
            elif len(suffix) < 2:
                # Can't tell yet, the rest of the token hasn't arrived.
                return -1, False

            # Just content that happens to look like a boundary.
            index = find_token(buffer, dash_boundary, index + 1)

        return -1, False

    def _internal_write(self, buffer: bytes) -> None:
        length = len(buffer)
        state = self.state
        i = 0

        while True:
            if state == MultipartState.SCANNING:
                index, last = self._find_boundary(buffer, i)
                if index < 0:
                    # Anything before a delimiter is preamble.  Only keep what
                    # might be the start of one.
                    self._margin = buffer[max(i, length - self.margin_size) :]
                    break

                if last:
                    self.callback("end")
                    state = MultipartState.DONE
                    i = index + len(self.terminator)
                    continue

                headers_start = index + len(self.delimiter)

                # The delimiter's own CRLF is part of the blank line when the
                # header block is empty.
                headers_end = find_token(buffer, DOUBLE_CRLF, headers_start - len(CRLF))
                if headers_end < 0:
                    if length - headers_start > self.max_header_size:
                        msg = "Header block exceeds %d bytes at %d" % (self.max_header_size, headers_start)
                        self.logger.warning(msg)
                        e = MalformedHeaderError(msg)
                        e.offset = headers_start
                        raise e

                    # Wait for the rest of the header block.
                    self._margin = buffer[index:]
                    self._awaiting_headers = True
                    break

                if headers_end - headers_start > self.max_header_size:
                    msg = "Header block exceeds %d bytes at %d" % (self.max_header_size, headers_start)
                    self.logger.warning(msg)
                    e = MalformedHeaderError(msg)
                    e.offset = headers_start
                    raise e

                try:
                    headers = parse_headers(
                        buffer[headers_start:headers_end], encoding=self.header_encoding, strict=self.strict_headers
                    )
                except MalformedHeaderError as e:
                    if e.offset >= 0:
                        e.offset += headers_start
                    raise

                self._awaiting_headers = False
                self.callback("part_begin", headers)
                state = MultipartState.DELIVERING
                i = headers_end + len(DOUBLE_CRLF)

            elif state == MultipartState.DELIVERING:
                index, last = self._find_boundary(buffer, i)
                if index < 0:
                    # Forward everything that can't be part of a boundary and
                    # hold back the rest.
                    safe = length - self.margin_size
                    if safe > i:
                        self.callback("part_data", buffer, i, safe)
                        i = safe
                    self._margin = buffer[i:]
                    break

                # The CRLF before the boundary belongs to the boundary.
                end = index
                if end - len(CRLF) >= i and buffer[end - len(CRLF) : end] == CRLF:
                    end -= len(CRLF)

                self.callback("part_data", buffer, i, end)
                self.callback("part_end")

                if last:
                    self.callback("end")
                    state = MultipartState.DONE
                    i = index + len(self.terminator)
                else:
                    # Rescan from the delimiter to pick up the next part.
                    state = MultipartState.SCANNING
                    i = index

            else:
                self._skip_epilogue(buffer, i)
                break

        self.state = state

    def _skip_epilogue(self, data: bytes, start: int) -> None:
        if self._skipped_epilogue:
            return

        # A trailing newline after the terminator is common and harmless.
        if data[start:].strip(b"\r\n"):
            self.logger.warning("Skipping data after last boundary")
            self._skipped_epilogue = True

    def finalize(self) -> None:
        """Finalize this parser, which signals that the source has no more
        data.  This raises :class:`UnexpectedEndOfStreamError` if a part is
        still open or a header block was left incomplete.
        """
        if self.state == MultipartState.DELIVERING:
            msg = "Stream ended before the closing boundary (%d bytes held back)" % len(self._margin)
            self.logger.warning(msg)
            raise UnexpectedEndOfStreamError(msg)

        if self.state == MultipartState.SCANNING:
            if self._awaiting_headers:
                msg = "Stream ended inside a header block (%d bytes held back)" % len(self._margin)
                self.logger.warning(msg)
                raise UnexpectedEndOfStreamError(msg)

            self._margin = b""
            self.state = MultipartState.DONE
            self.callback("end")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(boundary={self.boundary!r})"
