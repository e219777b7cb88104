__version__ = "0.1.0"

from .exceptions import (
    InvalidJSONError,
    MalformedHeaderError,
    MissingBoundaryError,
    MultipartError,
    ParseError,
    StreamClosedError,
    UnexpectedEndOfStreamError,
)
from .multipart import MultipartParser, MultipartState, find_token, parse_headers, parse_options_header
from .reader import MultipartReader, Part, PartStream, create_multipart_reader, extract_boundary, iterate_multipart

__all__ = (
    "InvalidJSONError",
    "MalformedHeaderError",
    "MissingBoundaryError",
    "MultipartError",
    "MultipartParser",
    "MultipartReader",
    "MultipartState",
    "ParseError",
    "Part",
    "PartStream",
    "StreamClosedError",
    "UnexpectedEndOfStreamError",
    "create_multipart_reader",
    "extract_boundary",
    "find_token",
    "iterate_multipart",
    "parse_headers",
    "parse_options_header",
)
