import asyncio
import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from multipart_stream.exceptions import MultipartError
    from multipart_stream.multipart import MultipartParser
    from multipart_stream.reader import MultipartReader


async def _source(chunks: list[bytes]):
    for chunk in chunks:
        yield chunk


async def _read_all(chunks: list[bytes], boundary: str, read_content: bool) -> None:
    async with MultipartReader(_source(chunks), boundary) as reader:
        async for part in reader:
            # Leaving content unread exercises the auto-drain path.
            if read_content:
                await part.bytes()


def parse_random_body(fdp: EnhancedDataProvider) -> None:
    parser = MultipartParser("boundary")
    for chunk in fdp.ConsumeChunks(fdp.ConsumeRandomBytes()):
        parser.write(chunk)
    parser.finalize()


def parse_wrapped_body(fdp: EnhancedDataProvider) -> None:
    boundary = "boundary"
    read_content = fdp.ConsumeBool()
    body = (
        f"--{boundary}\r\n"
        f"Content-Type: text/plain\r\n\r\n"
        f"{fdp.ConsumeRandomString()}\r\n"
        f"--{boundary}--\r\n"
    )
    chunks = fdp.ConsumeChunks(body.encode("utf-8", errors="ignore"))
    asyncio.run(_read_all(chunks, boundary, read_content))


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [parse_random_body, parse_wrapped_body]
    target = fdp.PickValueInList(targets)

    try:
        target(fdp)
    except MultipartError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
