class MultipartError(ValueError):
    """Base error class for our multipart decoder."""

    pass


class MissingBoundaryError(MultipartError):
    """This exception is raised when no boundary was given and none could be
    found in the ``Content-Type`` header of the source.
    """

    pass


class ParseError(MultipartError):
    """This exception (or a subclass) is raised when there is an error while
    parsing the multipart body.
    """

    #: This is the offset in the input data chunk (*NOT* the overall stream) in
    #: which the parse error occured.  It will be -1 if not specified.
    offset = -1


class MalformedHeaderError(ParseError):
    """This is raised when a part's header block cannot be parsed, either
    because it could not be decoded, a header line is malformed in strict
    mode, or the block grew past the configured maximum size.
    """

    pass


class UnexpectedEndOfStreamError(ParseError):
    """This is raised when the upstream source ends while a part is still open
    and no terminating boundary has been seen.
    """

    pass


class InvalidJSONError(MultipartError):
    """This is raised by :meth:`Part.json` when the part content is not valid
    JSON.
    """

    pass


class StreamClosedError(MultipartError):
    """Raised when reading a part's content after the reader was closed."""

    pass
