#!/usr/bin/env python3
"""
asyserve file server

Serves a directory tree over HTTP: directory listings, file downloads and,
when enabled, uploads into the directory being browsed. Access can be
restricted with HTTP Basic authentication using a plain or a hashed password.

Usage:
    asyserve [path] [-p port] [-a auth] [-u]

Example:
    asyserve ./downloads -p 8080 -a admin:sha256:<hex digest> -u
"""

import asyncio
import argparse
import logging
import sys

from asyserve import logger
from asyserve._version import __version__
from asyserve.config import ServeConfig, TLSSettings, parse_auth_spec, PlainAuth, HashedAuth
from asyserve.certmanager import get_server_ssl_context
from asyserve.handler import FileServerHandler
from asyserve.httpserver import HTTPServer


async def run_file_server(config:ServeConfig):
    """
    Runs the file server on every configured interface until cancelled.

    Args:
        config (ServeConfig): Immutable server configuration
    """
    ssl_ctx = get_server_ssl_context(config.tls)
    handler_factory = lambda: FileServerHandler(config)
    servers = [HTTPServer(handler_factory, interface, config.port, ssl_ctx=ssl_ctx) for interface in config.interfaces]
    try:
        for server in servers:
            await server.start()
        await asyncio.gather(*[server.serve() for server in servers])
    finally:
        for server in servers:
            await server.terminate()


def auth_spec_type(value:str):
    try:
        return parse_auth_spec(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))

def port_type(value:str):
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError('Port must be an integer, got %r' % value)
    if port < 0 or port > 65535:
        raise argparse.ArgumentTypeError('Port must be between 0 and 65535, got %s' % port)
    return port

def get_parser():
    parser = argparse.ArgumentParser(
        prog='asyserve',
        description='Minimal file server with directory listing, uploads and basic auth',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s                                   # Serve the current directory on port 8080
  %(prog)s /home/user/files -p 9000          # Serve a directory on a custom port
  %(prog)s /srv -a joe:secret                # Require a username and password
  %(prog)s /srv -a joe:sha256:<hex digest>   # Same, with a hashed password
  %(prog)s /srv -u                           # Allow uploads
        ''')

    parser.add_argument('path', nargs='?', default='.', help='Directory to serve (default: current directory)')
    parser.add_argument('-p', '--port', type=port_type, default=8080, help='Port to use (default: 8080)')
    parser.add_argument('-i', '--interfaces', action='append', default=None, help='Interface to listen on, can be given multiple times (default: 0.0.0.0)')
    parser.add_argument('-a', '--auth', type=auth_spec_type, default=None, help='Basic auth as "user:password", "user:sha256:<hex>" or "user:sha512:<hex>"')
    parser.add_argument('-u', '--upload-files', action='store_true', help='Enable file uploading')
    parser.add_argument('-o', '--overwrite-files', action='store_true', help='Let uploads replace existing files instead of rejecting them')
    parser.add_argument('-P', '--no-symlinks', action='store_true', help='Do not follow or list symbolic links')
    parser.add_argument('--realm', default='asyserve', help='Realm reported in the authentication challenge')
    parser.add_argument('--tls-cert', default=None, help='PEM certificate chain, enables HTTPS')
    parser.add_argument('--tls-key', default=None, help='PEM private key for --tls-cert')
    parser.add_argument('--tls-selfsigned', action='store_true', help='Serve HTTPS with a generated self-signed certificate')
    parser.add_argument('-d', '--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('-V', '--version', action='version', version='%(prog)s ' + __version__)
    return parser

def config_from_args(args) -> ServeConfig:
    if args.tls_key is not None and args.tls_cert is None:
        raise ValueError('--tls-key requires --tls-cert')
    return ServeConfig.create(
        args.path,
        auth=args.auth,
        uploads_enabled=args.upload_files,
        overwrite_files=args.overwrite_files,
        no_symlinks=args.no_symlinks,
        realm=args.realm,
        port=args.port,
        interfaces=args.interfaces,
        tls=TLSSettings(args.tls_cert, args.tls_key, args.tls_selfsigned),
    )

def print_banner(config:ServeConfig):
    scheme = 'https' if config.tls.enabled else 'http'
    print("asyserve %s" % __version__)
    print("=" * 50)
    print(f"Directory: {config.root}")
    for interface in config.interfaces:
        host = '[%s]' % interface if ':' in interface else interface
        print(f"Address: {scheme}://{host}:{config.port}")
    if isinstance(config.auth, PlainAuth):
        print(f"Auth: enabled for '{config.auth.username}' (plain password)")
    elif isinstance(config.auth, HashedAuth):
        print(f"Auth: enabled for '{config.auth.username}' ({config.auth.algorithm.value} password hash)")
    else:
        print("Auth: disabled")
    print(f"Uploads: {'enabled' if config.uploads_enabled else 'disabled'}")
    if config.uploads_enabled:
        print(f"Existing files: {'overwritten' if config.overwrite_files else 'kept (upload rejected)'}")
    print("=" * 50)


def main(argv = None):
    """
    Main entry point for the file server.
    """
    parser = get_parser()
    args = parser.parse_args(argv)

    if args.debug:
        logger.setLevel(logging.DEBUG)

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    print_banner(config)

    try:
        asyncio.run(run_file_server(config))
    except KeyboardInterrupt:
        print("\nServer stopped by user")
    except OSError as e:
        print(f"Failed to start server: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
