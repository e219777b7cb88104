import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from multipart_stream.multipart import parse_options_header
    from multipart_stream.reader import extract_boundary


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    value = fdp.ConsumeRandomBytes()
    try:
        parse_options_header(value)
        extract_boundary(value)
    except AssertionError:
        return
    except TypeError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
