"""
Streaming multipart/form-data upload ingestion.

The request body is fed chunk by chunk into MultipartStreamProcessor, which
only ever keeps a boundary-sized look-behind in memory and writes file data
straight to a hidden temporary file next to its final location. The file is
published under its real name only after the closing delimiter was seen, so
failed, cancelled or truncated uploads never show up in listings.
"""

import os
import re
import tempfile
import urllib.parse
from typing import AsyncIterator, Optional

from asyserve import logger
from asyserve.errors import MalformedMultipart, UploadConflict, UploadIOFailure, ServeError
from asyserve.listing import UPLOAD_FIELD_NAME
from asyserve.pathresolver import ResolvedPath


MAX_HEADER_BLOCK = 8192
MAX_FILENAME_BYTES = 255
TEMP_SUFFIX = '.uploading'


def sanitize_upload_filename(filename:str) -> Optional[str]:
    """
    Reduces a client supplied filename to a plain name inside the target directory.
    Returns None if nothing safe is left.
    """
    if not filename:
        return None

    # strip directory components, both separator flavours
    safe_name = re.split(r'[\\/]', filename)[-1].strip()

    if not safe_name or safe_name in ('.', '..'):
        return None
    if any(ord(c) < 0x20 or ord(c) == 0x7f for c in safe_name):
        return None
    if len(safe_name.encode('utf-8', errors='surrogateescape')) > MAX_FILENAME_BYTES:
        return None
    return safe_name

def parse_multipart_boundary(content_type:str) -> Optional[bytes]:
    """Extracts the boundary parameter of a multipart/form-data content type."""
    if not content_type:
        return None
    mediatype, _, params = content_type.partition(';')
    if mediatype.strip().lower() != 'multipart/form-data':
        return None
    match = re.search(r'boundary=(?:"([^"]+)"|([^;\s]+))', params, re.IGNORECASE)
    if match is None:
        return None
    boundary = match.group(1) or match.group(2)
    # RFC 2046 limits boundaries to 70 characters
    if not boundary or len(boundary) > 70:
        return None
    try:
        return boundary.encode('ascii')
    except UnicodeEncodeError:
        return None

def parse_part_headers(header_block:bytes):
    """Parses a part header block into a dict with lowercase header names."""
    try:
        text = header_block.decode('utf-8')
    except UnicodeDecodeError:
        text = header_block.decode('latin-1')

    headers = {}
    for line in text.split('\r\n'):
        if not line.strip():
            continue
        if ':' not in line:
            raise ValueError('Malformed part header line')
        name, value = line.split(':', 1)
        headers[name.strip().lower()] = value.strip()
    return headers

def parse_content_disposition(value:str):
    """
    Returns (disposition type, params) for a Content-Disposition value.
    Quoted strings may contain ';'. RFC 5987 'filename*' wins over 'filename'.
    """
    if value is None:
        return None, {}
    disposition, _, rest = value.partition(';')
    params = {}
    for match in re.finditer(r'\s*([^\s=;]+)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^;]*))\s*;?', rest):
        key = match.group(1).lower()
        if match.group(2) is not None:
            params[key] = re.sub(r'\\(.)', r'\1', match.group(2))
        else:
            params[key] = match.group(3).strip()

    if 'filename*' in params:
        charset, _, encoded = params['filename*'].partition("'")
        _, _, encoded = encoded.partition("'")
        try:
            params['filename'] = urllib.parse.unquote(encoded, encoding=charset or 'utf-8', errors='strict')
        except (LookupError, UnicodeDecodeError):
            pass
    return disposition.strip().lower(), params


class UploadedPart:
    def __init__(self, field_name:str, original_filename:str, content_type:str):
        self.field_name = field_name
        self.original_filename = original_filename
        self.content_type = content_type

class UploadedFile:
    def __init__(self, filename:str, path:str, size:int):
        self.filename = filename
        self.path = path
        self.size = size

    def __repr__(self):
        return 'UploadedFile(%r, %s bytes)' % (self.filename, self.size)


class MultipartStreamProcessor:
    """
    Incremental multipart/form-data parser that persists the first file part
    named `field_name` into `target_path`.
    """

    def __init__(self, boundary:bytes, target_path:str, field_name:str = UPLOAD_FIELD_NAME, overwrite:bool = False):
        self.target_path = target_path
        self.field_name = field_name
        self.overwrite = overwrite

        self.delimiter = b'--' + boundary
        self.part_delimiter = b'\r\n' + self.delimiter

        self.buffer = b''
        # 'preamble', 'delimiter_tail', 'headers', 'data', 'epilogue'
        self.state = 'preamble'
        self.current_part = None
        self.current_file_handle = None
        self.current_temp_path = None
        self.current_final_path = None
        self.current_filename = None
        self.current_size = 0
        self.uploaded_file = None

    @property
    def done(self):
        return self.state == 'epilogue'

    def process_chunk(self, chunk:bytes):
        if self.state == 'epilogue':
            return
        self.buffer += chunk

        while True:
            if self.state == 'preamble':
                if not self._process_preamble():
                    break
            elif self.state == 'delimiter_tail':
                if not self._process_delimiter_tail():
                    break
            elif self.state == 'headers':
                if not self._process_headers():
                    break
            elif self.state == 'data':
                if not self._process_data():
                    break
            else:
                # epilogue, anything after the close delimiter is ignored
                self.buffer = b''
                break

    def _process_preamble(self):
        pos = self.buffer.find(self.delimiter)
        if pos == -1:
            # keep a possible partial delimiter
            keep = len(self.delimiter) - 1
            if len(self.buffer) > keep:
                self.buffer = self.buffer[-keep:]
            return False
        self.buffer = self.buffer[pos + len(self.delimiter):]
        self.state = 'delimiter_tail'
        return True

    def _process_delimiter_tail(self):
        # a delimiter is followed by '--' (close) or optional whitespace and CRLF
        if len(self.buffer) < 2:
            return False
        if self.buffer.startswith(b'--'):
            self.buffer = b''
            self.state = 'epilogue'
            if self.current_temp_path is not None:
                self._publish_current_file()
            return False
        eol = self.buffer.find(b'\r\n')
        if eol == -1:
            if len(self.buffer) > 256:
                raise ValueError('Malformed multipart delimiter line')
            return False
        if self.buffer[:eol].strip(b' \t'):
            raise ValueError('Malformed multipart delimiter line')
        self.buffer = self.buffer[eol + 2:]
        self.state = 'headers'
        return True

    def _process_headers(self):
        if self.buffer.startswith(b'\r\n'):
            header_block = b''
            self.buffer = self.buffer[2:]
        else:
            header_end = self.buffer.find(b'\r\n\r\n')
            if header_end == -1:
                if len(self.buffer) > MAX_HEADER_BLOCK:
                    raise ValueError('Multipart headers too long or malformed')
                return False
            if header_end > MAX_HEADER_BLOCK:
                raise ValueError('Multipart headers too long')
            header_block = self.buffer[:header_end]
            self.buffer = self.buffer[header_end + 4:]

        headers = parse_part_headers(header_block)
        disposition, params = parse_content_disposition(headers.get('content-disposition'))
        if disposition != 'form-data':
            raise ValueError('Multipart part without form-data disposition')

        self.current_part = UploadedPart(
            params.get('name'),
            params.get('filename'),
            headers.get('content-type', 'application/octet-stream'),
        )

        if self.current_temp_path is None and self.uploaded_file is None \
                and self.current_part.field_name == self.field_name \
                and self.current_part.original_filename is not None:
            self._start_new_file(self.current_part.original_filename)

        self.state = 'data'
        return True

    def _process_data(self):
        pos = self.buffer.find(self.part_delimiter)
        if pos == -1:
            keep = len(self.part_delimiter) - 1
            if len(self.buffer) > keep:
                self._write_file_data(self.buffer[:-keep])
                self.buffer = self.buffer[-keep:]
            return False

        self._write_file_data(self.buffer[:pos])
        self.buffer = self.buffer[pos + len(self.part_delimiter):]
        if self.current_file_handle is not None:
            self._close_current_file()
        self.current_part = None
        self.state = 'delimiter_tail'
        return True

    def _start_new_file(self, filename):
        safe_filename = sanitize_upload_filename(filename)
        if safe_filename is None:
            raise ValueError('Invalid or unsafe filename')

        final_path = os.path.join(self.target_path, safe_filename)
        if self.overwrite is False and os.path.lexists(final_path):
            raise UploadConflict('File already exists: %s' % safe_filename)

        try:
            fd, temp_path = tempfile.mkstemp(prefix='.%s.' % safe_filename[:64], suffix=TEMP_SUFFIX, dir=self.target_path)
        except OSError as e:
            raise UploadIOFailure('Cannot create upload file') from e

        self.current_file_handle = os.fdopen(fd, 'wb')
        self.current_temp_path = temp_path
        self.current_final_path = final_path
        self.current_filename = safe_filename
        self.current_size = 0
        logger.debug('Receiving upload %s into %s' % (safe_filename, temp_path))

    def _write_file_data(self, data):
        if self.current_file_handle is None or not data:
            return
        try:
            self.current_file_handle.write(data)
        except OSError as e:
            raise UploadIOFailure('Error writing upload data') from e
        self.current_size += len(data)

    def _close_current_file(self):
        try:
            self.current_file_handle.close()
        except OSError as e:
            raise UploadIOFailure('Error closing upload file') from e
        finally:
            self.current_file_handle = None

    def _publish_current_file(self):
        # only reached once the closing delimiter was seen
        try:
            if self.overwrite is True:
                os.replace(self.current_temp_path, self.current_final_path)
                self.current_temp_path = None
            else:
                # link fails if the name appeared since the upload started
                os.link(self.current_temp_path, self.current_final_path)
        except FileExistsError as e:
            raise UploadConflict('File already exists: %s' % self.current_filename) from e
        except OSError as e:
            raise UploadIOFailure('Error publishing upload file') from e

        self.uploaded_file = UploadedFile(self.current_filename, self.current_final_path, self.current_size)
        logger.info('[UPLOAD-SUCCESS] Uploaded: %s (%s bytes)' % (self.current_filename, self.current_size))
        if self.current_temp_path is not None:
            # drop the hidden second link, the data stays under the final name
            self._remove_temp_file()

    def _remove_temp_file(self):
        try:
            os.unlink(self.current_temp_path)
            logger.debug('Removed temp file: %s' % self.current_temp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error('[UPLOAD-CLEANUP] Error removing temp file %s: %s' % (self.current_temp_path, e))
        self.current_temp_path = None

    def finalize(self) -> UploadedFile:
        """Called once the whole body was fed in."""
        if self.state != 'epilogue':
            raise ValueError('Multipart body ended before the closing delimiter')
        if self.uploaded_file is None:
            raise ValueError('No file part named "%s" in upload' % self.field_name)
        return self.uploaded_file

    def cleanup(self):
        """Removes whatever was not published. Safe to call more than once."""
        if self.current_file_handle is not None:
            try:
                self.current_file_handle.close()
            except OSError:
                pass
            self.current_file_handle = None

        if self.current_temp_path is not None:
            logger.info('[UPLOAD-CLEANUP] Discarding unfinished upload: %s' % self.current_temp_path)
            self._remove_temp_file()


class UploadIngestor:
    def __init__(self, overwrite:bool = False, field_name:str = UPLOAD_FIELD_NAME):
        self.overwrite = overwrite
        self.field_name = field_name

    async def ingest(self, target_dir:ResolvedPath, content_type:str, body:AsyncIterator[bytes]):
        """
        Streams a multipart body into target_dir.

        Args:
            target_dir (ResolvedPath): Directory the file lands in
            content_type (str): Content-Type header of the request
            body: Async iterator over the raw body chunks

        Returns:
            tuple: (UploadedFile, None) on success, (None, ServeError) on failure
        """
        if not target_dir.is_dir:
            return None, UploadIOFailure('Upload target is not a directory')

        boundary = parse_multipart_boundary(content_type)
        if boundary is None:
            return None, MalformedMultipart('Expected multipart/form-data with a boundary')

        processor = MultipartStreamProcessor(boundary, target_dir.path, field_name=self.field_name, overwrite=self.overwrite)
        try:
            async for chunk in body:
                processor.process_chunk(chunk)
            return processor.finalize(), None

        except ServeError as e:
            logger.warning('[UPLOAD-ERROR] %s' % e)
            return None, e
        except ValueError as e:
            logger.warning('[UPLOAD-VALIDATION] %s' % e)
            return None, MalformedMultipart(str(e))
        except OSError as e:
            logger.error('[UPLOAD-DISK] Upload aborted: %s' % e)
            return None, UploadIOFailure('Upload failed')
        finally:
            # also runs on cancellation
            processor.cleanup()
