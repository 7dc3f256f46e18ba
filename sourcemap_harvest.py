import argparse
import base64
import binascii
import json
import os
import posixpath
import re
import sys
import time
import requests
import urllib3

from urllib.parse import urljoin, urlparse, unquote
from playwright.sync_api import sync_playwright, Error as PlaywrightError

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


DEFAULT_OUTPUT_DIR = 'out'
DEFAULT_PATH_FILTERS = ['/src/']
DEFAULT_FILENAME = 'index.txt'
ANONYMOUS_SCRIPT = 'anonymous.js'
UP_MARKER = '_up_'
MAX_REDIRECTS = 10


class Logger:
    LOG = 1
    DEBUG = 2
    VERBOSE_DEBUG = 3

    def __init__(self):
        self.level = self.LOG

    def write(self, level, *args, **kwargs):
        if level <= self.level:
            print(*args, **kwargs, file=sys.stderr)

    def log(self, *args, **kwargs):
        self.write(self.LOG, *args, **kwargs)

    def debug(self, *args, **kwargs):
        self.write(self.DEBUG, *args, **kwargs)

    def vdebug(self, *args, **kwargs):
        self.write(self.VERBOSE_DEBUG, *args, **kwargs)


log = Logger()


class HarvestError(Exception):
    pass


class FetchError(HarvestError):
    def __init__(self, url, status=None, reason=None):
        self.url = url
        self.status = status
        self.reason = reason

        if status is not None:
            message = f'HTTP {status} for {url}'
        else:
            message = f'failed to fetch {url}'

        if reason:
            message += f': {reason}'

        super().__init__(message)


class ParseError(HarvestError):
    pass


class PathEscapeError(HarvestError):
    pass


class RetrievalError(HarvestError):
    pass


def sanitize_path(rel_path):
    """Neutralize a relative path so it can never climb above its root.

    `..` cancels the previous real segment; when there is none left, the
    `_up_` marker is emitted instead of ascending. Never raises.
    """
    if not rel_path:
        return ''

    parts = []

    for part in re.split(r'[/\\]', rel_path.lstrip('/')):
        if part == '..':
            if parts and parts[-1] != UP_MARKER:
                parts.pop()
            else:
                parts.append(UP_MARKER)
        elif part not in ('', '.'):
            parts.append(part)

    return os.sep.join(parts)


def safe_path_join(base_dir, rel_path):
    base_abs = os.path.abspath(base_dir)
    full = os.path.abspath(os.path.join(base_abs, sanitize_path(rel_path)))

    # trailing separators so that /base2 doesn't pass as being inside /base
    base_prefix = base_abs if base_abs.endswith(os.sep) else base_abs + os.sep

    if full == base_abs or not (full + os.sep).startswith(base_prefix):
        raise PathEscapeError(f'unsafe path: {rel_path} would escape {base_abs}')

    return full


def _replace_protocol_prefixes(path, with_vm=False):
    # a ./ right after the prefix is dropped along with it, webpack://./src -> webpack/src
    path = re.sub(r'^webpack://(\./)?', 'webpack/', path)
    path = re.sub(r'^rollup://(\./)?', 'rollup/', path)
    path = re.sub(r'^file://(\./)?', 'file/', path)

    if with_vm:
        path = re.sub(r'^vm://(\./)?', 'vm/', path, flags=re.IGNORECASE)

    return path


def url_to_filesystem_path(url):
    """Map a generated script url to a relative path, ie.
    https://example.com/app.js?v=1 -> example.com/app.js
    """
    if not url:
        return ANONYMOUS_SCRIPT

    path = _replace_protocol_prefixes(url, with_vm=True)
    path = re.sub(r'^https?://', '', path)
    path = re.sub(r'[?#].*', '', path, flags=re.DOTALL)

    return path or ANONYMOUS_SCRIPT


def normalize_source_file_path(source_path):
    """Map a `sources` entry of a sourcemap to a relative file path.

    Unlike url_to_filesystem_path, entries are usually module paths
    (webpack://, ./src/...), so query strings are kept and only a full
    http(s) url loses its scheme.
    """
    normalized = _replace_protocol_prefixes(source_path or '')

    if normalized.startswith('./'):
        normalized = normalized[2:]

    if re.match(r'^https?://', normalized):
        normalized = re.sub(r'^https?://', '', normalized)

    normalized = normalized.lstrip('/')

    # after the protocol strip, so "webpack:///" becomes webpack//index.txt
    if not posixpath.basename(normalized):
        normalized = posixpath.join(normalized, DEFAULT_FILENAME)

    return normalized


def matches_filter(path, filters):
    if not filters:
        return True

    return any(f in (path or '') for f in filters)


def decode_data_url(data_url):
    m = re.match(r'^data:([^,]*?)(;base64)?,(.*)$', data_url, flags=re.IGNORECASE | re.DOTALL)
    if not m:
        raise FetchError(data_url[:64], reason='invalid data url')

    if m.group(2):
        try:
            return base64.b64decode(m.group(3) + '==')
        except (binascii.Error, ValueError) as e:
            raise FetchError(data_url[:64], reason=f'bad base64 payload ({e})') from e

    return unquote(m.group(3)).encode('utf-8')


def resolve_sourcemap_url(map_ref, script_url):
    if re.match(r'^https?:|^data:|^file:|^webpack://', map_ref, flags=re.IGNORECASE):
        return map_ref

    if (script_url or '').startswith('http'):
        try:
            return urljoin(script_url, map_ref)
        except ValueError:
            return None

    # not fetchable by itself most likely, but that's the fetcher's problem
    return map_ref


def sourcemap_base_url(map_url):
    try:
        parsed = urlparse(map_url)
    except ValueError:
        return None

    if parsed.scheme.lower() in ('http', 'https') and parsed.netloc:
        return map_url

    return None


class Client:
    RETRY_STATUSES = (408, 429, 500, 502, 503, 504)

    def __init__(self, timeout: None | float | tuple[float, float] = (8, 16), headers: dict | None = None,
                 retries: int = 2, max_redirects: int = MAX_REDIRECTS):
        self.timeout = timeout
        self.sleep = 5
        self.retries = retries
        self.max_redirects = max_redirects
        self.rs = requests.Session()
        self.rs.verify = False

        if headers:
            self.rs.headers.update(headers)

    def request(self, method, url, *args, **kwargs):
        attempt = 0

        while True:
            try:
                # redirects are followed by fetch() so that the hop count is ours
                res = self.rs.request(method, url, *args, timeout=self.timeout, allow_redirects=False, **kwargs)

            except requests.exceptions.RequestException as e:
                if attempt < self.retries:
                    attempt += 1
                    log.debug('non-status request error, retrying', url, e)
                    time.sleep(self.sleep)
                    continue

                raise FetchError(url, reason=str(e)) from e

            if res.status_code in self.RETRY_STATUSES and attempt < self.retries:
                attempt += 1
                log.debug('retrying', url, res.status_code)
                time.sleep(self.sleep)
                continue

            return res

    def get(self, *args, **kwargs):
        return self.request('GET', *args, **kwargs)

    def fetch(self, url, _hops=0):
        if url[:5].lower() == 'data:':
            return decode_data_url(url)

        try:
            scheme = urlparse(url).scheme.lower()
        except ValueError as e:
            raise FetchError(url, reason=str(e)) from e

        if scheme not in ('http', 'https'):
            raise FetchError(url, reason='unsupported scheme')

        res = self.get(url)

        if 300 <= res.status_code < 400 and res.headers.get('location'):
            if _hops >= self.max_redirects:
                raise FetchError(url, res.status_code, f'more than {self.max_redirects} redirects')

            target = urljoin(url, res.headers['location'])
            log.vdebug('redirected', url, '->', target)
            return self.fetch(target, _hops + 1)

        if res.status_code != 200:
            raise FetchError(url, res.status_code)

        return res.content


class ScriptRecord:
    def __init__(self, script_id, url='', source_map_url=''):
        self.script_id = script_id
        self.url = url or ''
        self.source_map_url = source_map_url or ''

    def __repr__(self):
        return f'ScriptRecord({self.script_id!r}, {self.url!r}, {self.source_map_url!r})'


class ScriptStore:
    # written by the Debugger.scriptParsed callback, read by the extractor
    # afterwards; dicts keep insertion order so processing order is stable

    def __init__(self):
        self.scripts: dict[str, ScriptRecord] = {}

    def record(self, script_id, url='', source_map_url=''):
        self.scripts[script_id] = ScriptRecord(script_id, url, source_map_url)

    def on_script_parsed(self, event):
        self.record(
            event['scriptId'],
            event.get('url') or event.get('sourceURL') or '',
            event.get('sourceMapURL') or '',
        )

    def get(self, script_id):
        return self.scripts.get(script_id)

    def __iter__(self):
        # snapshot, getScriptSource may deliver new scriptParsed events meanwhile
        return iter(list(self.scripts.values()))

    def __len__(self):
        return len(self.scripts)


class OutputDirectory:
    def __init__(self, path):
        self.path = path

    def ensure(self):
        os.makedirs(self.path, exist_ok=True)

    def save(self, rel_path, content):
        file_path = safe_path_join(self.path, rel_path)
        os.makedirs(os.path.dirname(file_path), exist_ok=True)

        # existing files are overwritten
        with open(file_path, 'wb') as f:
            f.write(content)

        log.vdebug('saved', file_path)
        return file_path


class MapOutcome:
    NO_MAP_REFERENCE = 'no_map_reference'
    UNRESOLVABLE = 'unresolvable'
    FETCH_FAILED = 'fetch_failed'
    INVALID = 'invalid'
    PARSED = 'parsed'


class EntryOutcome:
    WRITTEN = 'written'
    FILTERED_OUT = 'filtered_out'
    UNAVAILABLE = 'unavailable'
    PATH_ESCAPE = 'path_escape'
    WRITE_FAILED = 'write_failed'
    INVALID = 'invalid'


class Tally:
    def __init__(self):
        self.saved = 0
        self.parsed_maps = 0
        self.skipped_no_map_ref = 0
        self.skipped_fetch_failed = 0
        self.skipped_invalid = 0
        self.filtered_out = 0
        self.path_errors = 0
        self.write_errors = 0
        self.invalid_entries = 0

    def add_map(self, outcome):
        match outcome:
            case MapOutcome.NO_MAP_REFERENCE:
                self.skipped_no_map_ref += 1
            case MapOutcome.UNRESOLVABLE | MapOutcome.FETCH_FAILED:
                self.skipped_fetch_failed += 1
            case MapOutcome.INVALID:
                self.skipped_invalid += 1
            case MapOutcome.PARSED:
                self.parsed_maps += 1

    def add_entry(self, outcome):
        match outcome:
            case EntryOutcome.WRITTEN:
                self.saved += 1
            case EntryOutcome.FILTERED_OUT:
                self.filtered_out += 1
            case EntryOutcome.PATH_ESCAPE:
                self.path_errors += 1
            case EntryOutcome.WRITE_FAILED:
                self.write_errors += 1
            case EntryOutcome.INVALID:
                self.invalid_entries += 1
            # unavailable content is expected for maps without sourcesContent

    def summary(self):
        return (f'{self.saved} original source file(s) from {self.parsed_maps} sourcemap(s); '
                f'skipped sourcemaps: {self.skipped_no_map_ref} without reference, '
                f'{self.skipped_fetch_failed} not fetched, {self.skipped_invalid} invalid')


def parse_sourcemap(content):
    try:
        data = json.loads(content.decode('utf-8-sig', errors='replace'))
    except (ValueError, RecursionError) as e:
        # JSONDecodeError is a ValueError, so are oversized integer literals
        raise ParseError(f'not json: {e}') from e

    if not isinstance(data, dict):
        raise ParseError('sourcemap is not a json object')

    sources = data.get('sources') or []
    if not isinstance(sources, list):
        raise ParseError('sources is not a list')

    sources_content = data.get('sourcesContent') or []
    if not isinstance(sources_content, list):
        sources_content = []

    return sources, sources_content


class SourcemapExtractor:
    def __init__(self, client, output, path_filters=None):
        self.client: Client = client
        self.output: OutputDirectory = output
        self.path_filters = path_filters or []

    def load_sourcemap(self, record):
        """Returns (outcome, map_url, (sources, sources_content))."""
        if not record.source_map_url:
            return MapOutcome.NO_MAP_REFERENCE, None, None

        map_url = resolve_sourcemap_url(record.source_map_url, record.url)
        if not map_url:
            log.debug('unresolvable sourcemap reference', record.source_map_url, 'for', record.url)
            return MapOutcome.UNRESOLVABLE, None, None

        try:
            content = self.client.fetch(map_url)
        except FetchError as e:
            log.debug('no source map at', map_url[:128], e)
            return MapOutcome.FETCH_FAILED, map_url, None

        try:
            document = parse_sourcemap(content)
        except ParseError as e:
            log.debug(f'source map at {map_url[:128]} error:', e)
            return MapOutcome.INVALID, map_url, None

        return MapOutcome.PARSED, map_url, document

    def get_entry_content(self, source, embedded, base_url):
        # embedded content wins, the network is only a fallback
        if embedded is not None:
            return str(embedded).encode('utf-8')

        if not base_url:
            return None

        try:
            return self.client.fetch(urljoin(base_url, source))
        except (FetchError, ValueError) as e:
            log.debug('source not available', source, e)
            return None

    def extract_entry(self, source, embedded, base_url):
        content = self.get_entry_content(source, embedded, base_url)
        if content is None:
            return EntryOutcome.UNAVAILABLE

        normalized = normalize_source_file_path(source)

        if not matches_filter(normalized, self.path_filters) and not matches_filter('/' + normalized, self.path_filters):
            log.vdebug('filtered out', normalized)
            return EntryOutcome.FILTERED_OUT

        try:
            self.output.save(normalized, content)
        except PathEscapeError as e:
            log.log('warning:', e)
            return EntryOutcome.PATH_ESCAPE
        except (OSError, ValueError) as e:
            log.log('warning: could not write', normalized, e)
            return EntryOutcome.WRITE_FAILED

        return EntryOutcome.WRITTEN

    def extract_sourcemap(self, record, tally):
        outcome, map_url, document = self.load_sourcemap(record)
        tally.add_map(outcome)

        if outcome != MapOutcome.PARSED:
            return

        sources, sources_content = document
        base_url = sourcemap_base_url(map_url)

        log.debug('extracting', len(sources), 'sources from', map_url[:128])

        for idx, source in enumerate(sources):
            if source is not None and not isinstance(source, str):
                log.debug('skipping non-string source entry', idx, 'in', map_url[:128])
                tally.add_entry(EntryOutcome.INVALID)
                continue

            embedded = sources_content[idx] if idx < len(sources_content) else None
            tally.add_entry(self.extract_entry(source or '', embedded, base_url))

    def extract_original_sources(self, store):
        tally = Tally()

        for record in store:
            self.extract_sourcemap(record, tally)

        return tally

    def extract_generated_scripts(self, store, get_script_source):
        saved = 0

        for record in store:
            script_path = url_to_filesystem_path(record.url)

            if not matches_filter(script_path, self.path_filters) and not matches_filter(record.url, self.path_filters):
                continue

            try:
                source = get_script_source(record.script_id)
                self.output.save(script_path, (source or '').encode('utf-8'))
            except RetrievalError as e:
                log.debug('skipping script', record.script_id, e)
                continue
            except PathEscapeError as e:
                log.log('warning:', e)
                continue
            except (OSError, ValueError) as e:
                log.log('warning: could not write', script_path, e)
                continue

            saved += 1

        return saved


class BrowserSession:
    def __init__(self, store, headless=True, navigation_timeout=30):
        self.store: ScriptStore = store
        self.headless = headless
        self.navigation_timeout = navigation_timeout

        self.playwright = None
        self.browser = None
        self.page = None
        self.cdp = None

    def __enter__(self):
        self.playwright = sync_playwright().start()

        try:
            self.browser = self.playwright.chromium.launch(
                headless=self.headless,
                args=['--no-sandbox', '--disable-setuid-sandbox'],
            )
            self.page = self.browser.new_page()
            self.cdp = self.page.context.new_cdp_session(self.page)

            self.cdp.send('Page.enable')
            self.cdp.send('Runtime.enable')
            self.cdp.send('Debugger.enable')

            self.cdp.on('Debugger.scriptParsed', self.store.on_script_parsed)
        except Exception:
            self.close()
            raise

        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        try:
            if self.browser:
                self.browser.close()
        finally:
            self.browser = None

            if self.playwright:
                self.playwright.stop()
                self.playwright = None

    def visit(self, url):
        log.log('loading', url)

        try:
            self.page.goto(url, wait_until='networkidle', timeout=self.navigation_timeout * 1000)
        except PlaywrightError as e:
            # usually a timeout waiting for networkidle, scripts seen so far are kept
            log.log('warning: navigation failed', url, e)

    def get_script_source(self, script_id):
        try:
            res = self.cdp.send('Debugger.getScriptSource', {'scriptId': script_id})
        except PlaywrightError as e:
            raise RetrievalError(f'script {script_id} unavailable: {e}') from e

        return res.get('scriptSource') or ''


class SourcemapHarvest:
    def __init__(self, config):
        self.root = config['root']
        self.routes = [urljoin(self.root, route) for route in config.get('routes', [])]

        self.save_generated = config.get('save_generated', True)
        self.save_original = config.get('save_original', True)
        self.headless = config.get('headless', True)
        self.navigation_timeout = config.get('navigation_timeout', 30)

        self.store = ScriptStore()
        self.output = OutputDirectory(config.get('output_dir', DEFAULT_OUTPUT_DIR))
        self.client = Client(headers=config.get('headers'))

        path_filters = config.get('path_filters')
        if path_filters is None:
            path_filters = DEFAULT_PATH_FILTERS

        self.extractor = SourcemapExtractor(self.client, self.output, path_filters)

        self.saved_generated = 0
        self.tally = Tally()

    def run(self):
        self.output.ensure()

        with BrowserSession(self.store, self.headless, self.navigation_timeout) as browser:
            for url in [self.root, *self.routes]:
                browser.visit(url)

            log.log('collected', len(self.store), 'scripts, extracting source files')

            if self.save_generated:
                self.saved_generated = self.extractor.extract_generated_scripts(self.store, browser.get_script_source)

        if self.save_original:
            self.tally = self.extractor.extract_original_sources(self.store)

        log.log(f'saved {self.saved_generated} generated script(s) and {self.tally.summary()} into {self.output.path}')


def get_config_from_args(argv=None):
    default_ua = 'Mozilla/5.0 (Windows NT 10.0; rv:124.0) Gecko/20100101 Firefox/124.0'

    parser = argparse.ArgumentParser(description='Extract original source files from the sourcemaps of a website.')

    parser.add_argument('url', help='The page to load.')
    parser.add_argument('routes', nargs='*', help='Other pages to load in the same session, relative to url.')
    parser.add_argument('-o', '--output', default=DEFAULT_OUTPUT_DIR, help=f'Output directory (default: {DEFAULT_OUTPUT_DIR}).')
    parser.add_argument('-v', '--verbose', action='count', default=0, help='Increase verbosity, use -vv for even more verbosity.')

    filter_group = parser.add_argument_group('filter options')
    filter_group.add_argument('-f', '--filter', action='append', default=None, help=f'Only keep files whose path contains this substring. May be specified multiple times (default: {" ".join(DEFAULT_PATH_FILTERS)}).')
    filter_group.add_argument('-nf', '--no-filter', action='store_true', help='Keep all files.')

    scan_group = parser.add_argument_group('scan options')
    scan_group.add_argument('-ng', '--no-generated', action='store_true', help='Do not save the generated (served) scripts.')
    scan_group.add_argument('-no', '--no-original', action='store_true', help='Do not extract original sources from sourcemaps.')
    scan_group.add_argument('-t', '--timeout', type=float, default=30, help='Navigation timeout per page in seconds (default: 30).')
    scan_group.add_argument('--headed', action='store_true', help='Show the browser window.')

    args = parser.parse_args(argv)

    if args.no_filter:
        path_filters = []
    elif args.filter is not None:
        path_filters = args.filter
    else:
        path_filters = list(DEFAULT_PATH_FILTERS)

    config = {
        'root': args.url,
        'routes': args.routes,
        'output_dir': args.output,
        'path_filters': path_filters,
        'save_generated': not args.no_generated,
        'save_original': not args.no_original,
        'navigation_timeout': args.timeout,
        'headless': not args.headed,
        'headers': {'User-Agent': default_ua},
    }

    return config, args.verbose


def main(argv=None):
    config, verbosity = get_config_from_args(argv)

    log.level += verbosity

    harvest = SourcemapHarvest(config)
    harvest.run()

    return 0


if __name__ == '__main__':
    sys.exit(main())
