"""Shared fixtures for the importer tests."""

import logging

import pytest

import matomo_log_importer as mli

SAMPLE_LINE = (
    '1.2.3.4 - - [25/Sep/2025:11:24:17 +0000] '
    '"GET /matomo.php?idsite=3&action_name=Home HTTP/1.1" 200 512 "-" "UA/1.0"'
)


class FakeClient:
    """Stands in for TrackingClient, answering from a queue of SendResults."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.requests = []
        self.closed = False

    def send(self, request):
        self.requests.append(request)
        if self.results:
            return self.results.pop(0)
        return mli.SendResult(status=204)

    def close(self):
        self.closed = True


@pytest.fixture
def make_config(tmp_path):
    def _make(lines=(), **overrides):
        log_path = tmp_path / "access.log"
        log_path.write_text("\n".join(lines) + "\n")
        values = {"logfile": str(log_path), "matomo_url": "https://matomo.test"}
        values.update(overrides)
        return mli.RunConfig(**values)
    return _make


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
