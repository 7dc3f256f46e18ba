import json
from unittest.mock import MagicMock, patch

import pytest

import sourcemap_harvest
from conftest import FakeClient
from sourcemap_harvest import (
    BrowserSession,
    DEFAULT_PATH_FILTERS,
    PlaywrightError,
    RetrievalError,
    ScriptStore,
    SourcemapHarvest,
    get_config_from_args,
)


class TestConfig:

    def test_defaults(self):
        config, verbosity = get_config_from_args(['https://example.com'])

        assert config['root'] == 'https://example.com'
        assert config['routes'] == []
        assert config['output_dir'] == 'out'
        assert config['path_filters'] == DEFAULT_PATH_FILTERS
        assert config['save_generated'] and config['save_original']
        assert config['headless']
        assert config['navigation_timeout'] == 30
        assert verbosity == 0

    def test_filters(self):
        config, _ = get_config_from_args(['https://example.com', '-f', 'app/', '-f', '/lib/'])
        assert config['path_filters'] == ['app/', '/lib/']

        config, _ = get_config_from_args(['https://example.com', '-nf'])
        assert config['path_filters'] == []

    def test_default_filters_are_not_shared(self):
        config, _ = get_config_from_args(['https://example.com'])
        config['path_filters'].append('x')

        assert DEFAULT_PATH_FILTERS == ['/src/']

    def test_options(self):
        config, verbosity = get_config_from_args([
            'https://example.com/app/', 'about', '/login',
            '-o', 'dump', '-ng', '-t', '5', '--headed', '-vv',
        ])

        assert config['routes'] == ['about', '/login']
        assert config['output_dir'] == 'dump'
        assert not config['save_generated']
        assert config['save_original']
        assert config['navigation_timeout'] == 5
        assert not config['headless']
        assert verbosity == 2


class FakeBrowserSession:
    """Stands in for BrowserSession, emits scriptParsed events on visit."""

    events = {}
    bodies = {}

    def __init__(self, store, headless=True, navigation_timeout=30):
        self.store = store
        self.visited = []
        FakeBrowserSession.last = self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        pass

    def visit(self, url):
        self.visited.append(url)
        for event in self.events.get(url, []):
            self.store.on_script_parsed(event)

    def get_script_source(self, script_id):
        if script_id not in self.bodies:
            raise RetrievalError(script_id)
        return self.bodies[script_id]


class TestSourcemapHarvest:

    def test_run(self, tmp_path):
        FakeBrowserSession.events = {
            'https://example.com/': [
                {'scriptId': '1', 'url': 'https://example.com/src/app.js', 'sourceMapURL': 'app.js.map'},
            ],
            'https://example.com/about': [
                {'scriptId': '2', 'url': 'https://example.com/lib/vendor.js', 'sourceMapURL': ''},
            ],
        }
        FakeBrowserSession.bodies = {'1': 'bundle', '2': 'vendor'}

        client = FakeClient({
            'https://example.com/src/app.js.map': json.dumps({
                'sources': ['webpack://./src/index.js', 'webpack://./node_modules/x/index.js'],
                'sourcesContent': ['index', 'x'],
            }),
        })

        config = {'root': 'https://example.com/', 'routes': ['about'], 'output_dir': str(tmp_path / 'out')}

        with patch.object(sourcemap_harvest, 'BrowserSession', FakeBrowserSession):
            harvest = SourcemapHarvest(config)
            harvest.extractor.client = client
            harvest.run()

        assert FakeBrowserSession.last.visited == ['https://example.com/', 'https://example.com/about']
        assert harvest.saved_generated == 1
        assert harvest.tally.saved == 1
        assert harvest.tally.filtered_out == 1
        assert harvest.tally.skipped_no_map_ref == 1
        assert (tmp_path / 'out' / 'example.com' / 'src' / 'app.js').read_text() == 'bundle'
        assert (tmp_path / 'out' / 'webpack' / 'src' / 'index.js').read_text() == 'index'

    def test_passes_can_be_disabled(self, tmp_path):
        FakeBrowserSession.events = {
            'https://example.com/': [
                {'scriptId': '1', 'url': 'https://example.com/src/app.js', 'sourceMapURL': 'app.js.map'},
            ],
        }
        FakeBrowserSession.bodies = {'1': 'bundle'}

        config = {
            'root': 'https://example.com/',
            'output_dir': str(tmp_path / 'out'),
            'save_generated': False,
            'save_original': False,
        }

        with patch.object(sourcemap_harvest, 'BrowserSession', FakeBrowserSession):
            harvest = SourcemapHarvest(config)
            harvest.extractor.client = FakeClient()
            harvest.run()

        assert harvest.saved_generated == 0
        assert harvest.tally.parsed_maps == 0
        assert list((tmp_path / 'out').iterdir()) == []

    def test_main(self, tmp_path):
        with patch.object(sourcemap_harvest, 'SourcemapHarvest') as harvest_cls:
            assert sourcemap_harvest.main(['https://example.com', '-o', str(tmp_path)]) == 0

        config = harvest_cls.call_args.args[0]
        assert config['output_dir'] == str(tmp_path)
        harvest_cls.return_value.run.assert_called_once_with()


class TestBrowserSession:

    def test_get_script_source(self):
        session = BrowserSession(ScriptStore())
        session.cdp = MagicMock()
        session.cdp.send.return_value = {'scriptSource': 'let a = 1'}

        assert session.get_script_source('42') == 'let a = 1'
        session.cdp.send.assert_called_once_with('Debugger.getScriptSource', {'scriptId': '42'})

    def test_get_script_source_failure(self):
        session = BrowserSession(ScriptStore())
        session.cdp = MagicMock()
        session.cdp.send.side_effect = PlaywrightError('No script for id: 42')

        with pytest.raises(RetrievalError):
            session.get_script_source('42')

    def test_navigation_failure_is_not_fatal(self):
        session = BrowserSession(ScriptStore(), navigation_timeout=2)
        session.page = MagicMock()
        session.page.goto.side_effect = PlaywrightError('Timeout 2000ms exceeded')

        session.visit('https://example.com/')

        session.page.goto.assert_called_once_with('https://example.com/', wait_until='networkidle', timeout=2000)

    def test_close_stops_playwright_when_browser_close_fails(self):
        session = BrowserSession(ScriptStore())
        session.browser = MagicMock()
        session.browser.close.side_effect = PlaywrightError('Target closed')
        playwright = session.playwright = MagicMock()

        with pytest.raises(PlaywrightError):
            session.close()

        playwright.stop.assert_called_once_with()
        assert session.browser is None
        assert session.playwright is None

    def test_subscribes_store_to_script_events(self):
        store = ScriptStore()

        with patch.object(sourcemap_harvest, 'sync_playwright') as sync_playwright:
            playwright = sync_playwright.return_value.start.return_value
            browser = playwright.chromium.launch.return_value
            page = browser.new_page.return_value
            cdp = page.context.new_cdp_session.return_value

            with BrowserSession(store) as session:
                assert session.cdp is cdp

            cdp.send.assert_any_call('Debugger.enable')
            cdp.on.assert_called_once_with('Debugger.scriptParsed', store.on_script_parsed)
            browser.close.assert_called_once_with()
            playwright.stop.assert_called_once_with()
