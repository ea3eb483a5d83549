from io import BytesIO

import pytest
from fastapi import UploadFile

from formguard.utils.file_upload import (
    MULTIPART_OVERHEAD_BYTES,
    content_length_exceeds_limit,
    get_upload_file_size,
    stream_size,
)


def test_content_length_limit():
    limit = 1024
    assert not content_length_exceeds_limit(None, max_size_bytes=limit)
    assert not content_length_exceeds_limit("garbage", max_size_bytes=limit)
    assert not content_length_exceeds_limit(str(limit + MULTIPART_OVERHEAD_BYTES), max_size_bytes=limit)
    assert content_length_exceeds_limit(str(limit + MULTIPART_OVERHEAD_BYTES + 1), max_size_bytes=limit)


def test_stream_size_preserves_position():
    stream = BytesIO(b"abcdef")
    stream.seek(2)
    assert stream_size(stream) == 6
    assert stream.tell() == 2


@pytest.mark.asyncio
async def test_get_upload_file_size():
    upload = UploadFile(filename="a.txt", file=BytesIO(b"x" * 300))
    assert await get_upload_file_size(upload) == 300
