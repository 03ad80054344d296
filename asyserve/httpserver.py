import os
import ssl
import stat
import asyncio
import datetime
import email.utils
import mimetypes
import traceback
from itertools import count
from typing import AsyncIterator, List, Optional

import h11

from asyserve import logger
from asyserve._version import __version__


FILE_CHUNK_SIZE = 512 * 1024
BODY_IDLE_TIMEOUT = 30
# unread request bodies up to this size are discarded so the response reaches the client
DISCARD_BODY_LIMIT = 1024 * 1024
DISCARD_BODY_TIMEOUT = 5


def format_date_time(dt=None):
    """Generate a RFC 7231 / RFC 9110 IMF-fixdate string"""
    if dt is None:
        dt = datetime.datetime.now(datetime.timezone.utc)
    return email.utils.format_datetime(dt, usegmt=True)

def parse_http_date(value:str):
    try:
        dt = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt

def parse_range_header(value:str, file_size:int):
    """
    Parses a single 'bytes=' range.

    Returns:
        None if the header should be ignored (full response),
        (start, end) inclusive for a satisfiable range,
        False if the range cannot be satisfied.
    """
    if not value or not value.startswith('bytes='):
        return None
    spec = value[6:].strip()
    if ',' in spec or '-' not in spec:
        # multipart/byteranges is not supported, serve the whole file
        return None
    start, end = spec.split('-', 1)
    try:
        if start == '':
            # suffix range: the last N bytes
            length = int(end)
            if length <= 0:
                return False
            if file_size == 0:
                return False
            return max(file_size - length, 0), file_size - 1
        start = int(start)
        end = int(end) if end else file_size - 1
    except ValueError:
        return None
    if start < 0:
        return None
    if start >= file_size:
        return False
    if start > end:
        return None
    return start, min(end, file_size - 1)


class HTTPWrapper:
    _next_id = count()

    def __init__(self, client_id, reader:asyncio.StreamReader, writer:asyncio.StreamWriter):
        self.client_id = client_id
        self.MAX_RECV = 2**16
        self.reader = reader
        self.writer = writer
        self.conn = h11.Connection(h11.SERVER)
        self.ident = " ".join(
            [f"asyserve/{__version__}", h11.PRODUCT_ID]
        ).encode("ascii")
        self.peer = writer.get_extra_info('peername')
        self.last_status = None
        self._obj_id = next(HTTPWrapper._next_id)

    def debug(self, msg):
        logger.debug('[%s] %s' % (self.client_id, msg))

    async def send(self, event):
        # ConnectionClosed is never sent, the socket is closed directly instead
        assert type(event) is not h11.ConnectionClosed
        if type(event) is h11.Response:
            self.last_status = event.status_code
        data = self.conn.send(event)
        try:
            self.writer.write(data)
            await self.writer.drain()
        except BaseException:
            # If sending fails (including cancellation), we have no choice but to give it up.
            self.conn.send_failed()
            raise

    async def _read_from_peer(self):
        if self.conn.they_are_waiting_for_100_continue:
            self.debug("Sending 100 Continue")
            go_ahead = h11.InformationalResponse(
                status_code=100, headers=self.basic_headers()
            )
            await self.send(go_ahead)
        try:
            data = await self.reader.read(self.MAX_RECV)
        except ConnectionError as exc:
            self.debug('Error reading from peer: %s' % exc)
            # They've stopped listening. Not much we can do about it here.
            data = b""
        self.conn.receive_data(data)

    async def next_event(self):
        while True:
            event = self.conn.next_event()
            if event is h11.NEED_DATA:
                await self._read_from_peer()
                continue
            return event

    async def iter_body(self, timeout:float = BODY_IDLE_TIMEOUT) -> AsyncIterator[bytes]:
        """
        Yields the request body as it arrives.
        Raises ConnectionError if the peer disconnects or goes idle for `timeout` seconds.
        """
        while True:
            try:
                event = await asyncio.wait_for(self.next_event(), timeout=timeout)
            except asyncio.TimeoutError:
                raise ConnectionError('Timeout reading request body')
            except h11.RemoteProtocolError as e:
                raise ConnectionError('Invalid request body: %s' % e)

            if type(event) is h11.Data:
                yield event.data
            elif type(event) is h11.EndOfMessage:
                return
            else:
                raise ConnectionError('Connection closed while reading request body')

    async def discard_body(self, limit:int = DISCARD_BODY_LIMIT, timeout:float = DISCARD_BODY_TIMEOUT) -> bool:
        """Reads and drops the rest of the request body. Returns False if it was too large."""
        discarded = 0
        try:
            async for chunk in self.iter_body(timeout=timeout):
                discarded += len(chunk)
                if discarded > limit:
                    return False
        except ConnectionError as exc:
            self.debug("Discarding request body failed: %s" % exc)
            return False
        return True

    async def shutdown_and_clean_up(self):
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, ssl.SSLError, OSError):
            return

    def basic_headers(self):
        # HTTP requires these headers in all responses
        return [
            ("Date", format_date_time().encode("ascii")),
            ("Server", self.ident),
        ]


class HTTPServerHandler:
    """
    Base request handler. One instance per connection; requests are dispatched
    to do_<METHOD> coroutines.
    """
    def __init__(self):
        self._wrapper:HTTPWrapper = None

    def basic_headers(self):
        return self._wrapper.basic_headers()

    @staticmethod
    def get_header(request:h11.Request, name:bytes) -> Optional[str]:
        name = name.lower()
        for hname, value in request.headers:
            if hname.lower() == name:
                return value.decode('latin-1')
        return None

    def allowed_methods(self) -> List[str]:
        return sorted(attr[3:] for attr in dir(self) if attr.startswith('do_'))

    async def _process_request(self, wrapper:HTTPWrapper, request:h11.Request):
        self._wrapper = wrapper
        method = request.method.decode("ascii")
        func = getattr(self, f"do_{method}", None)
        if func is None:
            extra = [("Allow", ", ".join(self.allowed_methods()).encode('ascii'))]
            return await self.send_response(405, b"Method Not Allowed", extra_headers=extra)
        await func(request)

    async def send_response(self, status_code:int, body:bytes = b'', content_type:str = 'text/plain; charset=utf-8', extra_headers = None):
        headers = self.basic_headers()
        if extra_headers:
            headers.extend(extra_headers)
        if status_code != 304:
            headers.append(("Content-Type", content_type.encode("ascii")))
            headers.append(("Content-Length", str(len(body)).encode("ascii")))
        await self._wrapper.send(h11.Response(status_code=status_code, headers=headers))
        if body:
            await self._wrapper.send(h11.Data(data=body))
        await self._wrapper.send(h11.EndOfMessage())

    async def send_redirect(self, location:str, status_code:int = 303):
        await self.send_response(status_code, b'', extra_headers=[("Location", location.encode('ascii'))])

    @staticmethod
    def get_mime_type(filepath):
        mime_type, _ = mimetypes.guess_type(filepath)
        return mime_type or 'application/octet-stream'

    async def send_file(self, file_path:str, request:h11.Request):
        """
        Streams a regular file with conditional and single-range support.
        Raises OSError before anything is sent if the file cannot be opened.
        """
        f = open(file_path, 'rb')
        try:
            st = os.fstat(f.fileno())
            if not stat.S_ISREG(st.st_mode):
                raise IsADirectoryError(file_path)

            file_size = st.st_size
            mtime = datetime.datetime.fromtimestamp(int(st.st_mtime), datetime.timezone.utc)
            headers = [
                ("Last-Modified", format_date_time(mtime).encode("ascii")),
                ("Accept-Ranges", b"bytes"),
            ]

            since = parse_http_date(self.get_header(request, b'if-modified-since'))
            if since is not None and mtime <= since and self.get_header(request, b'range') is None:
                return await self.send_response(304, extra_headers=headers)

            status_code = 200
            start_byte, end_byte = 0, file_size - 1
            byte_range = parse_range_header(self.get_header(request, b'range'), file_size)
            if byte_range is False:
                headers.append(("Content-Range", f"bytes */{file_size}".encode("ascii")))
                return await self.send_response(416, b"Range Not Satisfiable", extra_headers=headers)
            if byte_range is not None:
                start_byte, end_byte = byte_range
                status_code = 206
                headers.append(("Content-Range", f"bytes {start_byte}-{end_byte}/{file_size}".encode("ascii")))

            content_length = end_byte - start_byte + 1 if file_size > 0 else 0
            response_headers = self.basic_headers()
            response_headers.extend(headers)
            response_headers.extend([
                ("Content-Type", self.get_mime_type(file_path).encode("ascii")),
                ("Content-Length", str(content_length).encode("ascii")),
            ])
            await self._wrapper.send(h11.Response(status_code=status_code, headers=response_headers))

            if start_byte > 0:
                f.seek(start_byte)
            bytes_remaining = content_length
            while bytes_remaining > 0:
                chunk = f.read(min(FILE_CHUNK_SIZE, bytes_remaining))
                if not chunk:
                    break
                await self._wrapper.send(h11.Data(data=chunk))
                bytes_remaining -= len(chunk)

            if bytes_remaining > 0:
                # file shrunk while sending, the declared length can not be honoured
                raise ConnectionError('File changed while sending: %s' % file_path)
            await self._wrapper.send(h11.EndOfMessage())
        finally:
            f.close()


class HTTPServer:
    def __init__(self, client_handler, host:str = '127.0.0.1', port:int = 8080, ssl_ctx:ssl.SSLContext = None):
        self.client_handler = client_handler
        self.host = host
        self.port = port
        self.ssl_ctx = ssl_ctx

        self.server = None
        self.clients = set()
        self.id_counter = 0
        self.started_evt = asyncio.Event()

    @property
    def bound_ports(self):
        if self.server is None:
            return []
        return [sock.getsockname()[1] for sock in self.server.sockets]

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.terminate()

    async def start(self):
        self.server = await asyncio.start_server(self.__handle_connection, self.host, self.port, ssl=self.ssl_ctx)
        self.started_evt.set()
        logger.debug('Listening on %s:%s' % (self.host, self.bound_ports))
        return self.server

    async def serve(self):
        if self.server is None:
            await self.start()
        async with self.server:
            await self.server.serve_forever()

    async def terminate(self):
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
        for task in list(self.clients):
            task.cancel()
        if self.clients:
            await asyncio.gather(*self.clients, return_exceptions=True)
        self.clients = set()

    async def _send_error_response(self, wrapper:HTTPWrapper, status_code:int, reason:bytes):
        if wrapper.conn.our_state not in (h11.IDLE, h11.SEND_RESPONSE):
            return
        try:
            headers = wrapper.basic_headers()
            headers.extend([
                ("Content-Type", b"text/plain; charset=utf-8"),
                ("Content-Length", str(len(reason)).encode("ascii")),
                ("Connection", b"close"),
            ])
            await wrapper.send(h11.Response(status_code=status_code, headers=headers))
            await wrapper.send(h11.Data(data=reason))
            await wrapper.send(h11.EndOfMessage())
        except Exception as exc:
            wrapper.debug('Could not send error response: %r' % exc)

    async def __handle_connection(self, reader, writer):
        task = asyncio.current_task()
        self.clients.add(task)
        client_id = self.id_counter
        self.id_counter += 1
        wrapper = HTTPWrapper(client_id, reader, writer)
        handler = self.client_handler()
        wrapper.debug('New client connected from %s' % (wrapper.peer,))
        try:
            while True:
                try:
                    event = await wrapper.next_event()
                except h11.RemoteProtocolError as exc:
                    wrapper.debug('Protocol error: %s' % exc)
                    await self._send_error_response(wrapper, exc.error_status_hint, b"Bad Request")
                    break

                if type(event) is h11.ConnectionClosed:
                    break
                if type(event) is not h11.Request:
                    wrapper.debug('Unexpected event type %s' % type(event))
                    break

                wrapper.last_status = None
                try:
                    await handler._process_request(wrapper, event)
                except (ConnectionError, ssl.SSLError) as exc:
                    wrapper.debug('Connection lost while handling request: %r' % exc)
                    break
                except Exception:
                    logger.error('Unhandled error while handling %s %s\n%s' % (event.method, event.target, traceback.format_exc()))
                    await self._send_error_response(wrapper, 500, b"Internal Server Error")
                    break
                finally:
                    logger.info('%s "%s %s" %s' % (
                        wrapper.peer[0] if wrapper.peer else '-',
                        event.method.decode('ascii', 'replace'),
                        event.target.decode('ascii', 'replace'),
                        wrapper.last_status,
                    ))

                if wrapper.conn.our_state in (h11.DONE, h11.MUST_CLOSE) and wrapper.conn.their_state is h11.SEND_BODY:
                    await wrapper.discard_body()
                if wrapper.conn.our_state is h11.MUST_CLOSE:
                    break
                if wrapper.conn.states == {h11.CLIENT: h11.DONE, h11.SERVER: h11.DONE}:
                    wrapper.conn.start_next_cycle()
                    continue
                # the request body was not consumed, the connection can not be reused
                break
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error('Connection handler failed\n%s' % traceback.format_exc())
        finally:
            await wrapper.shutdown_and_clean_up()
            self.clients.discard(task)
