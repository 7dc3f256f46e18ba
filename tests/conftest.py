from unittest.mock import MagicMock

import pytest
from requests.structures import CaseInsensitiveDict

import sourcemap_harvest
from sourcemap_harvest import FetchError, OutputDirectory, RetrievalError


def make_response(status_code=200, content=b'', headers=None):
    res = MagicMock()
    res.status_code = status_code
    res.content = content
    res.headers = CaseInsensitiveDict(headers or {})
    return res


class FakeClient:
    """Serves fixed bodies by url and records every fetch."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.fetched = []

    def fetch(self, url):
        self.fetched.append(url)

        if url.startswith('data:'):
            return sourcemap_harvest.decode_data_url(url)

        if url not in self.responses:
            raise FetchError(url, 404)

        body = self.responses[url]
        return body.encode('utf-8') if isinstance(body, str) else body


class FakeScriptSources:
    def __init__(self, sources=None):
        self.sources = dict(sources or {})

    def __call__(self, script_id):
        if script_id not in self.sources:
            raise RetrievalError(f'no script {script_id}')
        return self.sources[script_id]


@pytest.fixture
def output(tmp_path):
    out = OutputDirectory(str(tmp_path / 'out'))
    out.ensure()
    return out


@pytest.fixture
def fake_client():
    return FakeClient()
