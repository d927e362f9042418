import pytest
import requests

from perfstat.exceptions import MetadataError
from perfstat.services.probe import HttpContentProbe


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no JSON")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append((url, params, headers, timeout))
        if self.error:
            raise self.error
        return self.response


ENVELOPE = {
    "status": "SUCCESS",
    "data": {"modules": [{"id": 2, "topicDTOs": [{"id": 4, "questionDTOs": [{"id": 664}]}]}]},
}


def test_probe_parses_envelope():
    session = FakeSession(FakeResponse(200, ENVELOPE))
    probe = HttpContentProbe("http://perfstat.local/", role="SP", api_token="secret", timeout=3, session=session)

    response = probe(2, 1)
    assert response.has_content
    assert response.modules[0].topics[0].id == 4
    url, params, headers, timeout = session.calls[0]
    assert url == "http://perfstat.local/performance-statistics/performance"
    assert params == {"module": 2, "ordinal": 1}
    assert headers == {"X-User-Role": "SP", "Authorization": "Bearer secret"}
    assert timeout == 3


def test_probe_not_found_is_empty():
    probe = HttpContentProbe("http://perfstat.local", session=FakeSession(FakeResponse(404)))
    assert probe(9, 1) is None


@pytest.mark.parametrize(
    "session",
    [
        FakeSession(FakeResponse(500)),
        FakeSession(FakeResponse(200)),
        FakeSession(error=requests.ConnectionError("refused")),
    ],
)
def test_probe_failures_raise_metadata_error(session):
    probe = HttpContentProbe("http://perfstat.local", session=session)
    with pytest.raises(MetadataError):
        probe(2, 1)
