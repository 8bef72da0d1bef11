"""
Per-path response header decoration for the file server:
- Path normalization to backslash-delimited config keys
- Read-only header configuration store loaded from headerConfig.json
- Client IP scrubbing and edge node short names for APC resources
- aiohttp hook that applies the configured headers to every response
- If-None-Match revalidation against configured ETags
"""

import asyncio
import ipaddress
import json
import posixpath
from types import MappingProxyType
from typing import NamedTuple

from aiohttp import hdrs, web

# Inbound headers forwarded by the upstream proxy
EDGE_ENVIRONMENT_HEADER = 'X-FD-EdgeEnvironment'
SOCKET_IP_HEADER = 'X-FD-SocketIP'

# Prefix lengths kept when scrubbing client addresses
IPV4_PREFIX = 24
IPV6_PREFIX = 32

PATH_SEPARATOR = '\\'


class ConfigError(Exception):
    """Raised when startup configuration cannot be used"""


class HeaderConfig(NamedTuple):
    config_name: str = ''
    access_control_allow_origin: str = ''
    access_control_expose_headers: str = ''
    cache_control: str = ''
    etag: str = ''
    timing_allow_origin: str = ''
    x_front_end: str = ''

    @classmethod
    def from_json(cls, data):
        """Build a record from one decoded headerConfig.json entry"""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(f'Header config entry must be an object, got {type(data).__name__}')

        values = {}
        for key, value in data.items():
            field = JSON_FIELDS.get(key.lower())
            # Unknown keys are ignored, null leaves the field empty
            if field is None or value is None:
                continue
            if not isinstance(value, str):
                raise ConfigError(f'Header config field {key!r} must be a string')
            values[field] = value
        return cls(**values)


# JSON key (lower-cased) -> HeaderConfig field
JSON_FIELDS = {
    'configname': 'config_name',
    'accesscontrolalloworigin': 'access_control_allow_origin',
    'accesscontrolexposeheaders': 'access_control_expose_headers',
    'cachecontrol': 'cache_control',
    'etag': 'etag',
    'timingalloworigin': 'timing_allow_origin',
    'xfrontend': 'x_front_end',
}

# Response header -> HeaderConfig field, applied to every configured path
DIRECT_HEADERS = (
    ('Access-Control-Allow-Origin', 'access_control_allow_origin'),
    ('Access-Control-Expose-Headers', 'access_control_expose_headers'),
    ('Cache-Control', 'cache_control'),
    ('ETag', 'etag'),
    ('Timing-Allow-Origin', 'timing_allow_origin'),
)


class HeaderConfigStore:
    """Immutable mapping of normalized path -> HeaderConfig"""

    def __init__(self, configs=()):
        mapping = {}
        # Later entries replace earlier ones with the same name
        for config in configs:
            mapping[config.config_name] = config
        self._configs = MappingProxyType(mapping)

    def lookup(self, path):
        """Return the HeaderConfig for a normalized path, or None"""
        return self._configs.get(path)

    @property
    def configs(self):
        return self._configs

    def __len__(self):
        return len(self._configs)

    def __contains__(self, path):
        return path in self._configs

    def __iter__(self):
        return iter(self._configs)


def load_header_configs(config_path, logger=None):
    """
    Load headerConfig.json into a HeaderConfigStore.

    A missing file yields an empty store; a file that exists but cannot be
    read or decoded raises ConfigError.
    """
    try:
        with open(config_path, 'rb') as f:
            raw = f.read()
    except FileNotFoundError:
        if logger:
            logger.warning(f'Header config {config_path} not found, serving without custom headers')
        return HeaderConfigStore()
    except OSError as e:
        raise ConfigError(f'Failed to read the header config {config_path}: {e}') from e

    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ConfigError(f'Failed to unmarshal the json header config: {e}') from e

    if data is None:
        data = []
    if not isinstance(data, list):
        raise ConfigError('Header config must be a JSON array')

    store = HeaderConfigStore(HeaderConfig.from_json(item) for item in data)
    if logger:
        logger.info(f'Loaded {len(store)} header configs from {config_path}')
    return store


def normalize_path(raw_path):
    """
    Canonicalize a request path into a backslash-delimited config key.

    Both separators are accepted, '.' and '..' segments are resolved and
    the result carries no leading or trailing separator.
    """
    cleaned = posixpath.normpath(raw_path.replace(PATH_SEPARATOR, '/')).strip('/')
    if cleaned == '.':
        return ''
    return cleaned.replace('/', PATH_SEPARATOR)


def scrub_ip_address(value):
    """Truncate an address to its /24 (IPv4) or /32 (IPv6) prefix"""
    if not value:
        return ''
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return ''

    if address.version == 6:
        # Zoned addresses such as fe80::1%eth0 are not client addresses
        if address.scope_id is not None:
            return ''
        if address.ipv4_mapped is not None:
            address = address.ipv4_mapped

    prefix = IPV4_PREFIX if address.version == 4 else IPV6_PREFIX
    host_bits = address.max_prefixlen - prefix
    masked = (int(address) >> host_bits) << host_bits
    return str(type(address)(masked))


def edge_node_short_name(edge_node):
    """Return the last hyphen-delimited segment, or '' if there is no hyphen"""
    parts = edge_node.split('-')
    if len(parts) > 1:
        return parts[-1]
    return ''


def has_custom_apc_headers(path):
    """True for apc\\<resource> and edge_footprint\\apc\\<resource> paths"""
    segments = path.split(PATH_SEPARATOR)
    if len(segments) > 1 and segments[0] == 'apc':
        return True
    return len(segments) > 2 and segments[0] == 'edge_footprint' and segments[1] == 'apc'


class HeaderDecorator:
    """Applies configured headers to responses from the file handler"""

    def __init__(self, store):
        self.store = store

    def headers_for(self, raw_path, request_headers):
        """Compute the headers a response for raw_path should carry"""
        path = normalize_path(raw_path)
        config = self.store.lookup(path)
        if config is None:
            return {}

        headers = {}
        for header, field in DIRECT_HEADERS:
            value = getattr(config, field)
            if value:
                headers[header] = value

        if has_custom_apc_headers(path):
            computed = (
                ('X-FrontEnd', config.x_front_end),
                ('X-EndPoint', edge_node_short_name(request_headers.get(EDGE_ENVIRONMENT_HEADER, ''))),
                ('X-UserHostAddress', scrub_ip_address(request_headers.get(SOCKET_IP_HEADER, ''))),
            )
            for header, value in computed:
                if value:
                    headers[header] = value

        return headers

    async def decorate(self, request, response):
        """on_response_prepare hook: overwrite response headers with the configured values"""
        for header, value in self.headers_for(request.path, request.headers).items():
            response.headers[header] = value

    def install(self, app, file_exists=None):
        """
        Run the decorator for every response the application prepares.

        file_exists(request_path) reports whether the file handler would serve
        a file for the path; when given, matching If-None-Match requests for
        configured ETags are answered with 304 before delegating.
        """
        if file_exists is not None:
            app.middlewares.append(self.revalidation_middleware(file_exists))
        # Runs after the file handler has set its own ETag and Last-Modified
        app.on_response_prepare.append(self.decorate)
        return self

    def revalidation_middleware(self, file_exists):
        """Answer 304 when If-None-Match names the configured ETag of an existing file"""

        @web.middleware
        async def middleware(request, handler):
            if request.method not in (hdrs.METH_GET, hdrs.METH_HEAD):
                return await handler(request)

            config = self.store.lookup(normalize_path(request.path))
            if config is None or not config.etag:
                return await handler(request)
            if not etag_matches(request.headers.get(hdrs.IF_NONE_MATCH, ''), config.etag):
                return await handler(request)

            loop = asyncio.get_running_loop()
            if not await loop.run_in_executor(None, file_exists, request.path):
                return await handler(request)
            # Headers are applied by decorate when the 304 is prepared
            return web.Response(status=304)

        return middleware


def _strip_weak(etag):
    return etag[2:] if etag.startswith('W/') else etag


def etag_matches(if_none_match, etag):
    """Weak comparison of an If-None-Match list against one ETag"""
    target = _strip_weak(etag.strip())
    for candidate in if_none_match.split(','):
        candidate = candidate.strip()
        if not candidate:
            continue
        if candidate == '*' or _strip_weak(candidate) == target:
            return True
    return False
