import asyncio
import base64
import contextlib
from html.parser import HTMLParser

import h11
import pytest

from asyserve.config import ServeConfig
from asyserve.handler import FileServerHandler
from asyserve.httpserver import HTTPServer

FILES = ["test.txt", "test.html", "test.mkv"]


class HTTPResult:
    def __init__(self, status, headers, body):
        self.status = status
        self.headers = headers
        self.body = body

class ListingParser(HTMLParser):
    """Collects text nodes, link targets and forms of a rendered page."""
    def __init__(self):
        super().__init__()
        self.texts = []
        self.links = []
        self.forms = []
        self._in_link = False

    def handle_starttag(self, tag, attrs):
        if tag == 'a':
            self._in_link = True
            self.links.append([dict(attrs).get('href'), ''])
        elif tag == 'form':
            self.forms.append(dict(attrs))

    def handle_endtag(self, tag):
        if tag == 'a':
            self._in_link = False

    def handle_data(self, data):
        if data.strip():
            self.texts.append(data)
        if self._in_link:
            self.links[-1][1] += data

def parse_html(body):
    parser = ListingParser()
    parser.feed(body.decode('utf-8') if isinstance(body, bytes) else body)
    parser.close()
    return parser

def basic_auth_header(username, password):
    token = base64.b64encode(f"{username}:{password}".encode('utf-8')).decode('ascii')
    return ("Authorization", "Basic " + token)

def multipart_body(field_name, filename, content, boundary='asyserveboundary1234', content_type='text/plain'):
    body = (
        f'--{boundary}\r\n'
        f'Content-Disposition: form-data; name="{field_name}"; filename="{filename}"\r\n'
        f'Content-Type: {content_type}\r\n'
        f'\r\n'
    ).encode('utf-8') + content + f'\r\n--{boundary}--\r\n'.encode('ascii')
    return body, f'multipart/form-data; boundary={boundary}'

async def http_request(port, method, target, headers=None, body=b''):
    reader, writer = await asyncio.open_connection('127.0.0.1', port)
    try:
        conn = h11.Connection(h11.CLIENT)
        req_headers = [("Host", "127.0.0.1:%s" % port), ("Connection", "close")]
        if headers:
            req_headers.extend(headers)
        if body or method == 'POST':
            req_headers.append(("Content-Length", str(len(body))))
        data = conn.send(h11.Request(method=method, target=target, headers=req_headers))
        if body:
            data += conn.send(h11.Data(data=body))
        data += conn.send(h11.EndOfMessage())
        writer.write(data)
        await writer.drain()

        response = None
        content = b''
        while True:
            event = conn.next_event()
            if event is h11.NEED_DATA:
                conn.receive_data(await reader.read(65536))
                continue
            if type(event) is h11.Response:
                response = event
            elif type(event) is h11.Data:
                content += event.data
            elif type(event) in (h11.EndOfMessage, h11.ConnectionClosed):
                break
        headers = {k.decode('latin-1').lower(): v.decode('latin-1') for k, v in response.headers}
        return HTTPResult(response.status_code, headers, content)
    finally:
        writer.close()


@contextlib.asynccontextmanager
async def serving(config):
    server = HTTPServer(lambda: FileServerHandler(config), '127.0.0.1', 0)
    await server.start()
    try:
        yield server.bound_ports[0]
    finally:
        await server.terminate()


@pytest.fixture
def served_dir(tmp_path):
    """Temporary directory with a few files inside."""
    for name in FILES:
        (tmp_path / name).write_text("Test Hello Yes")
    return tmp_path

@pytest.fixture
def make_config(served_dir):
    def _make(**kwargs):
        return ServeConfig.create(str(served_dir), **kwargs)
    return _make
