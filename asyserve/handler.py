import html
import urllib.parse

import h11

from asyserve import logger
from asyserve import auth
from asyserve.config import ServeConfig
from asyserve.errors import ServeError, NotFound, Unauthorized, MethodNotAllowed, UploadDisabled, MalformedMultipart
from asyserve.httpserver import HTTPServerHandler
from asyserve.listing import DirectoryRenderer, UPLOAD_ENDPOINT
from asyserve.pathresolver import PathResolver
from asyserve.upload import UploadIngestor


class FileServerHandler(HTTPServerHandler):
    """
    Request router of the file server.

    Every request passes the auth gate first (when credentials are configured),
    then the URL path is resolved against the serve root and the request is
    handed to the directory renderer, the file streamer or the upload ingestor.
    No state is kept between requests besides the read-only configuration.
    """

    def __init__(self, config:ServeConfig):
        super().__init__()
        self.config = config
        self.resolver = PathResolver(config.root, no_symlinks=config.no_symlinks)
        self.renderer = DirectoryRenderer(no_symlinks=config.no_symlinks)
        self.ingestor = UploadIngestor(overwrite=config.overwrite_files)

    def is_authorized(self, request:h11.Request) -> bool:
        if self.config.auth is None:
            return True
        credentials = auth.parse_basic_authorization(self.get_header(request, b'authorization'))
        if credentials is None:
            return False
        return auth.verify(self.config.auth, *credentials)

    async def _process_request(self, wrapper, request:h11.Request):
        self._wrapper = wrapper
        if not self.is_authorized(request):
            logger.debug('Rejected unauthenticated request for %r' % request.target)
            realm = self.config.realm.replace('"', '')
            extra = [("WWW-Authenticate", f'Basic realm="{realm}"'.encode('utf-8'))]
            return await self.serve_error(Unauthorized(), extra_headers=extra)
        await super()._process_request(wrapper, request)

    @staticmethod
    def split_target(request:h11.Request):
        """Splits an origin-form target into (path, query). A leading '//' is part of the path."""
        target = request.target.decode('latin-1')
        path, _, query = target.partition('?')
        return path.partition('#')[0], query.partition('#')[0]

    async def serve_error(self, err:ServeError, extra_headers = None):
        """Sends a generic error page. The error message itself stays in the log."""
        body = f"<html><body><h1>Error {err.status_code}</h1><p>{html.escape(err.reason)}</p></body></html>".encode('utf-8')
        await self.send_response(err.status_code, body, 'text/html; charset=utf-8', extra_headers=extra_headers)

    async def do_GET(self, request:h11.Request):
        path, _ = self.split_target(request)
        resolved = self.resolver.resolve(path)

        if resolved.is_dir:
            try:
                content = self.renderer.render(resolved.path, resolved.url_path, self.config.uploads_enabled)
            except OSError as e:
                logger.warning('Listing %s failed: %s' % (resolved.path, e))
                return await self.serve_error(NotFound())
            return await self.send_response(200, content.encode('utf-8'), 'text/html; charset=utf-8')

        if resolved.is_file:
            try:
                return await self.send_file(resolved.path, request)
            except OSError as e:
                if self._wrapper.conn.our_state is not h11.SEND_RESPONSE:
                    raise
                logger.warning('Opening %s failed: %s' % (resolved.path, e))

        await self.serve_error(NotFound())

    async def do_POST(self, request:h11.Request):
        path, query = self.split_target(request)
        if path != UPLOAD_ENDPOINT:
            return await self.serve_error(MethodNotAllowed(), extra_headers=[("Allow", b"GET")])

        if self.config.uploads_enabled is False:
            return await self.serve_error(UploadDisabled())

        target = urllib.parse.parse_qs(query).get('path', ['/'])[0]
        resolved = self.resolver.resolve(target)
        if not resolved.is_dir:
            return await self.serve_error(NotFound())

        content_type = self.get_header(request, b'content-type')
        if content_type is None or not content_type.lower().startswith('multipart/form-data'):
            return await self.serve_error(MalformedMultipart())

        uploaded, err = await self.ingestor.ingest(resolved, content_type, self._wrapper.iter_body())
        if err is not None:
            return await self.serve_error(err)

        logger.info('Stored upload %s in %s' % (uploaded.filename, resolved.path))
        await self.send_redirect(resolved.url_path)
