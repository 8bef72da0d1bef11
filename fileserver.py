#!/usr/bin/env python3
"""
Static file server with per-path response headers:
- Serves a directory verbatim (aiohttp static route)
- Adds CORS, caching and timing headers configured in headerConfig.json
- Adds front end, edge node and scrubbed client IP headers for APC resources
- Size and age bounded rotating log file
- index.html for directories, 304 for configured ETags
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

from aiohttp import web

from header_decorator import ConfigError, HeaderDecorator, load_header_configs

# Server limits
READ_TIMEOUT = 10  # seconds
MAX_HEADER_BYTES = 1 << 20
DEFAULT_HTTP_PORT = 80
INDEX_FILE = 'index.html'

# Log rotation policy
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_MAX_AGE_DAYS = 10
BACKUP_TIME_FORMAT = '%Y-%m-%dT%H-%M-%S.%f'

LOGGER_NAME = 'fileserver'


class ServerConfig:
    """Listen address loaded from config.json"""

    def __init__(self, port=''):
        self.port = port

    @classmethod
    def from_json(cls, data):
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError('Server config must be a JSON object')

        config = cls()
        for key, value in data.items():
            if key.lower() != 'port' or value is None:
                continue
            if not isinstance(value, str):
                raise ConfigError('Server config field "Port" must be a string')
            config.port = value
        return config

    def listen_address(self):
        """Split the ':8080' style address into (host, port); an empty host means all interfaces"""
        if not self.port:
            return None, DEFAULT_HTTP_PORT
        host, sep, port = self.port.rpartition(':')
        if not sep:
            raise ConfigError(f'Missing port in address {self.port!r}')

        host = host.strip('[]') or None
        # An empty port in a non-empty address lets the OS pick one
        if not port:
            return host, 0
        if not port.isdigit() or int(port) > 65535:
            raise ConfigError(f'Invalid port in address {self.port!r}')
        return host, int(port)

    def __repr__(self):
        return f'ServerConfig(port={self.port!r})'


def load_server_config(config_path):
    """Read config.json; any failure is fatal"""
    try:
        with open(config_path, 'rb') as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f'Failed to load the config file {config_path}: {e}') from e

    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ConfigError(f'Failed to unmarshal the json config: {e}') from e
    return ServerConfig.from_json(data)


class AgeBoundRotatingFileHandler(RotatingFileHandler):
    """
    Rotates at max_bytes into timestamped siblings of the log file
    (FileServer-<utc time>.log) and deletes siblings older than max_age_days.
    """

    def __init__(self, filename, max_bytes=LOG_MAX_BYTES, max_age_days=LOG_MAX_AGE_DAYS,
                 encoding='utf-8', delay=False):
        os.makedirs(os.path.dirname(os.path.abspath(filename)), exist_ok=True)
        super().__init__(filename, maxBytes=max_bytes, backupCount=0, encoding=encoding, delay=delay)
        self.max_age = timedelta(days=max_age_days)

    def _backup_parts(self):
        directory, name = os.path.split(self.baseFilename)
        root, ext = os.path.splitext(name)
        return directory, root + '-', ext

    def backup_filename(self, when):
        directory, prefix, ext = self._backup_parts()
        return os.path.join(directory, f'{prefix}{when.strftime(BACKUP_TIME_FORMAT)}{ext}')

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None

        now = datetime.now(timezone.utc)
        self.rotate(self.baseFilename, self.rotation_filename(self.backup_filename(now)))
        self.remove_expired_backups(now)

        if not self.delay:
            self.stream = self._open()

    def remove_expired_backups(self, now):
        """Delete rotated files whose timestamp is older than max_age"""
        directory, prefix, ext = self._backup_parts()
        for name in os.listdir(directory):
            if not name.startswith(prefix) or not name.endswith(ext):
                continue
            stamp = name[len(prefix):len(name) - len(ext)]
            try:
                rotated_at = datetime.strptime(stamp, BACKUP_TIME_FORMAT).replace(tzinfo=timezone.utc)
            except ValueError:
                continue
            if now - rotated_at > self.max_age:
                os.remove(os.path.join(directory, name))


def resolve_log_path(environ=None, script_path=None):
    """Log under $DataDir, or next to the running script when DataDir is unset"""
    environ = os.environ if environ is None else environ
    base = environ.get('DataDir', '')
    if not base:
        script_path = sys.argv[0] if script_path is None else script_path
        try:
            base = os.path.dirname(os.path.abspath(script_path))
        except (OSError, ValueError) as e:
            raise ConfigError('Could not get the local path.') from e
    return os.path.join(base, 'logs', 'local', 'FileServer', 'FileServer.log')


def setup_logging(log_path, console=True):
    """Build the server logger; the returned handle is passed to everything that logs"""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s')
    try:
        file_handler = AgeBoundRotatingFileHandler(log_path)
    except OSError as e:
        raise ConfigError(f'Could not open the log file {log_path}: {e}') from e
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def resolve_served_file(files_dir, request_path):
    """Return the file a GET for request_path serves, following directory index files, or None"""
    root = Path(files_dir).resolve()
    try:
        target = (root / request_path.lstrip('/')).resolve()
        target.relative_to(root)
    except (OSError, RuntimeError, ValueError):
        # Outside the root, embedded NUL or a symlink loop
        return None

    if target.is_dir():
        index = target / INDEX_FILE
        if request_path.endswith('/') and index.is_file():
            return index
        return None
    if target.is_file():
        return target
    return None


def index_middleware(files_dir):
    """Serve index.html for directory requests, redirecting '/dir' to '/dir/'"""

    def find_index(request_path):
        target = resolve_served_file(files_dir, request_path.rstrip('/') + '/')
        if target is None or target.name != INDEX_FILE:
            return None
        return target

    @web.middleware
    async def middleware(request, handler):
        if request.method not in ('GET', 'HEAD'):
            return await handler(request)

        loop = asyncio.get_running_loop()
        index = await loop.run_in_executor(None, find_index, request.path)
        if index is None:
            return await handler(request)

        if not request.path.endswith('/'):
            raise web.HTTPMovedPermanently(request.path + '/')
        return web.FileResponse(index)

    return middleware


def create_app(header_store, files_dir, logger=None):
    """Configures and returns the aiohttp application serving files_dir"""
    logger = logger or logging.getLogger(LOGGER_NAME)
    app = web.Application(
        logger=logger,
        handler_args={
            'max_line_size': MAX_HEADER_BYTES,
            'max_field_size': MAX_HEADER_BYTES,
        },
    )

    HeaderDecorator(header_store).install(
        app, file_exists=lambda request_path: resolve_served_file(files_dir, request_path) is not None
    )
    app.middlewares.append(index_middleware(files_dir))
    app.router.add_static('/', path=files_dir, name='files', show_index=True)
    return app


def build_parser():
    parser = argparse.ArgumentParser(description='Static file server with per-path response headers')
    parser.add_argument('--config', default='config.json', help='Server config file (default: config.json)')
    parser.add_argument('--header-config', default='headerConfig.json',
                        help='Per-path header config file (default: headerConfig.json)')
    parser.add_argument('--dir', default='./files', help='Directory to serve (default: ./files)')
    parser.add_argument('--log-file', help='Log file path (default: <DataDir>/logs/local/FileServer/FileServer.log)')
    parser.add_argument('--quiet', action='store_true', help='Disable console logging')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        log_path = args.log_file or resolve_log_path()
        logger = setup_logging(log_path, console=not args.quiet)
    except ConfigError as e:
        print(f'Error: {e}', file=sys.stderr)
        sys.exit(1)

    try:
        server_config = load_server_config(args.config)
        host, port = server_config.listen_address()
        header_store = load_header_configs(args.header_config, logger=logger)

        files_dir = os.path.abspath(args.dir)
        if not os.path.isdir(files_dir):
            raise ConfigError(f"Directory '{files_dir}' does not exist")
    except ConfigError as e:
        logger.critical(str(e))
        sys.exit(1)

    logger.info(f'Server Config: {server_config!r}')
    logger.info(f'Serving directory: {files_dir}')

    app = create_app(header_store, files_dir, logger=logger)
    web.run_app(
        app,
        host=host,
        port=port,
        keepalive_timeout=READ_TIMEOUT,
        access_log=logger.getChild('access'),
        print=logger.info,
    )
    logger.info('Server stopped.')


if __name__ == '__main__':
    main()
