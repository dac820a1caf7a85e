import os

import pytest

from fakes import FakeBackend
from pipeflow.backends import LocalShellBackend

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


@pytest.fixture
def fixture_path():
    def _path(name):
        return os.path.join(FIXTURES, name)
    return _path


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def local_backend(workspace):
    return LocalShellBackend(workdir=str(workspace), poll_interval=0.01)
