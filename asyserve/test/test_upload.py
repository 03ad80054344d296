import asyncio
import os

import pytest

from conftest import multipart_body

from asyserve.errors import MalformedMultipart, UploadConflict, UploadIOFailure
from asyserve.pathresolver import PathResolver
from asyserve.upload import (
    MultipartStreamProcessor, UploadIngestor, parse_content_disposition,
    parse_multipart_boundary, sanitize_upload_filename,
)


async def _chunks(data, size):
    for i in range(0, len(data), size):
        yield data[i:i + size]

def _ingest(target, content_type, body, chunk_size=7, overwrite=False):
    resolved = PathResolver(str(target)).resolve('/')
    ingestor = UploadIngestor(overwrite=overwrite)
    return asyncio.run(ingestor.ingest(resolved, content_type, _chunks(body, chunk_size)))

def _visible(path):
    return sorted(os.listdir(str(path)))


@pytest.mark.parametrize('chunk_size', [1, 3, 7, 64, 100000])
def test_ingest_across_chunk_boundaries(tmp_path, chunk_size):
    payload = b'this should be uploaded\r\n--not-a-boundary\r\n' * 50
    body, content_type = multipart_body('file_to_upload', 'uploaded test file.txt', payload)
    uploaded, err = _ingest(tmp_path, content_type, body, chunk_size)
    assert err is None
    assert uploaded.filename == 'uploaded test file.txt'
    assert uploaded.size == len(payload)
    assert (tmp_path / 'uploaded test file.txt').read_bytes() == payload
    assert _visible(tmp_path) == ['uploaded test file.txt']

def test_ingest_skips_other_fields(tmp_path):
    boundary = 'xyz'
    body = (
        b'preamble text\r\n'
        b'--xyz\r\n'
        b'Content-Disposition: form-data; name="comment"\r\n\r\n'
        b'hello\r\n'
        b'--xyz\r\n'
        b'Content-Disposition: form-data; name="file_to_upload"; filename="a.bin"\r\n'
        b'Content-Type: application/octet-stream\r\n\r\n'
        b'\x00\x01\x02\r\n'
        b'--xyz--\r\n'
        b'epilogue'
    )
    uploaded, err = _ingest(tmp_path, 'multipart/form-data; boundary="%s"' % boundary, body)
    assert err is None
    assert (tmp_path / 'a.bin').read_bytes() == b'\x00\x01\x02'
    assert _visible(tmp_path) == ['a.bin']

def test_ingest_empty_file(tmp_path):
    body, content_type = multipart_body('file_to_upload', 'empty.txt', b'')
    uploaded, err = _ingest(tmp_path, content_type, body)
    assert err is None
    assert (tmp_path / 'empty.txt').read_bytes() == b''

def test_ingest_strips_directories(tmp_path):
    (tmp_path / 'sub').mkdir()
    body, content_type = multipart_body('file_to_upload', '../../etc/passwd', b'data')
    uploaded, err = _ingest(tmp_path / 'sub', content_type, body)
    assert err is None
    assert uploaded.filename == 'passwd'
    assert (tmp_path / 'sub' / 'passwd').read_bytes() == b'data'
    assert _visible(tmp_path) == ['sub']

def test_ingest_rejects_unsafe_name(tmp_path):
    body, content_type = multipart_body('file_to_upload', 'dir/..', b'data')
    uploaded, err = _ingest(tmp_path, content_type, body)
    assert uploaded is None
    assert isinstance(err, MalformedMultipart)
    assert _visible(tmp_path) == []

def test_ingest_conflict_keeps_existing_file(tmp_path):
    (tmp_path / 'taken.txt').write_bytes(b'original')
    body, content_type = multipart_body('file_to_upload', 'taken.txt', b'new data')
    uploaded, err = _ingest(tmp_path, content_type, body)
    assert isinstance(err, UploadConflict)
    assert err.status_code == 409
    assert (tmp_path / 'taken.txt').read_bytes() == b'original'
    assert _visible(tmp_path) == ['taken.txt']

def test_ingest_overwrite(tmp_path):
    (tmp_path / 'taken.txt').write_bytes(b'original')
    body, content_type = multipart_body('file_to_upload', 'taken.txt', b'new data')
    uploaded, err = _ingest(tmp_path, content_type, body, overwrite=True)
    assert err is None
    assert (tmp_path / 'taken.txt').read_bytes() == b'new data'

def test_conflict_detected_at_publish_time(tmp_path):
    processor = MultipartStreamProcessor(b'b', str(tmp_path))
    processor.process_chunk(b'--b\r\nContent-Disposition: form-data; name="file_to_upload"; filename="race.txt"\r\n\r\nmine')
    # another upload wins the name while this one is still streaming
    (tmp_path / 'race.txt').write_bytes(b'theirs')
    with pytest.raises(UploadConflict):
        processor.process_chunk(b'\r\n--b--\r\n')
    processor.cleanup()
    assert (tmp_path / 'race.txt').read_bytes() == b'theirs'
    assert _visible(tmp_path) == ['race.txt']

def test_truncated_body_leaves_nothing(tmp_path):
    body, content_type = multipart_body('file_to_upload', 'partial.txt', b'x' * 10000)
    uploaded, err = _ingest(tmp_path, content_type, body[:5000])
    assert isinstance(err, MalformedMultipart)
    assert _visible(tmp_path) == []

def test_disconnect_leaves_nothing(tmp_path):
    body, content_type = multipart_body('file_to_upload', 'partial.txt', b'x' * 10000)

    async def broken_stream():
        yield body[:5000]
        raise ConnectionError('peer went away')

    resolved = PathResolver(str(tmp_path)).resolve('/')
    uploaded, err = asyncio.run(UploadIngestor().ingest(resolved, content_type, broken_stream()))
    assert isinstance(err, UploadIOFailure)
    assert _visible(tmp_path) == []

def test_cancellation_leaves_nothing(tmp_path):
    body, content_type = multipart_body('file_to_upload', 'partial.txt', b'x' * 10000)
    started = []

    async def stalled_stream():
        yield body[:5000]
        started.append(True)
        await asyncio.sleep(3600)

    async def scenario():
        resolved = PathResolver(str(tmp_path)).resolve('/')
        task = asyncio.ensure_future(UploadIngestor().ingest(resolved, content_type, stalled_stream()))
        while not started:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert _visible(tmp_path) == []

def test_missing_file_part(tmp_path):
    body = b'--b\r\nContent-Disposition: form-data; name="other"\r\n\r\nvalue\r\n--b--\r\n'
    uploaded, err = _ingest(tmp_path, 'multipart/form-data; boundary=b', body)
    assert isinstance(err, MalformedMultipart)

def test_bad_content_type(tmp_path):
    uploaded, err = _ingest(tmp_path, 'application/json', b'{}')
    assert isinstance(err, MalformedMultipart)
    uploaded, err = _ingest(tmp_path, 'multipart/form-data', b'')
    assert isinstance(err, MalformedMultipart)


@pytest.mark.parametrize('filename,expected', [
    ('uploaded test file.txt', 'uploaded test file.txt'),
    ('/abs/path/name.txt', 'name.txt'),
    ('..\\..\\windows\\evil.exe', 'evil.exe'),
    ('  padded.txt ', 'padded.txt'),
    ('', None),
    ('.', None),
    ('..', None),
    ('dir/', None),
    ('a/..', None),
    ('bad\x00name', None),
    ('new\nline', None),
    ('x' * 256, None),
])
def test_sanitize_upload_filename(filename, expected):
    safe = sanitize_upload_filename(filename)
    assert safe == expected
    if safe is not None:
        assert '/' not in safe and '\\' not in safe

def test_parse_multipart_boundary():
    assert parse_multipart_boundary('multipart/form-data; boundary=abc') == b'abc'
    assert parse_multipart_boundary('Multipart/Form-Data; charset=utf-8; boundary="a b"') == b'a b'
    assert parse_multipart_boundary('multipart/mixed; boundary=abc') is None
    assert parse_multipart_boundary('multipart/form-data') is None
    assert parse_multipart_boundary(None) is None

def test_parse_content_disposition():
    kind, params = parse_content_disposition('form-data; name="file_to_upload"; filename="a;b \\"q\\".txt"')
    assert kind == 'form-data'
    assert params['name'] == 'file_to_upload'
    assert params['filename'] == 'a;b "q".txt'
    kind, params = parse_content_disposition("form-data; name=f; filename=\"x\"; filename*=UTF-8''%C3%A9t%C3%A9.txt")
    assert params['filename'] == 'été.txt'

def test_missing_close_delimiter_publishes_nothing(tmp_path):
    body = b'--b\r\nContent-Disposition: form-data; name="file_to_upload"; filename="t.txt"\r\n\r\nhello\r\n--b'
    uploaded, err = _ingest(tmp_path, 'multipart/form-data; boundary=b', body)
    assert uploaded is None
    assert isinstance(err, MalformedMultipart)
    assert _visible(tmp_path) == []

def test_file_kept_back_until_close_delimiter(tmp_path):
    processor = MultipartStreamProcessor(b'b', str(tmp_path))
    processor.process_chunk(b'--b\r\nContent-Disposition: form-data; name="file_to_upload"; filename="t.txt"\r\n\r\nhello\r\n--b')
    processor.process_chunk(b'\r\nContent-Disposition: form-data; name="note"\r\n\r\nx\r\n--b')
    assert not (tmp_path / 't.txt').exists()
    processor.process_chunk(b'--\r\n')
    assert processor.finalize().size == 5
    processor.cleanup()
    assert _visible(tmp_path) == ['t.txt']
    assert (tmp_path / 't.txt').read_bytes() == b'hello'
