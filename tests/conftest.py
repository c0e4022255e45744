import threading
import pytest
from usblsim.navigation import StaticProbe
from usblsim.transponder import TransponderConfig


class RecordingSleep:
    """Sleep replacement that records requested durations."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class GatedSleep:
    """Sleep replacement that blocks until released."""

    def __init__(self):
        self.calls = []
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self, seconds):
        self.calls.append(seconds)
        self.entered.set()
        self.release.wait(5.0)


def makeConfig(**overrides):
    params = dict(
        namespace='usbl',
        transponderDevice='transponder',
        transponderID='T1',
        transceiverDevice='transceiver',
        transceiverID='tx_3',
        seed=7,
    )
    params.update(overrides)
    return TransponderConfig(**params)


@pytest.fixture
def config():
    return makeConfig(responseMode='blocking')


@pytest.fixture
def probe():
    # Peer one sound-speed-second away at 10 C, z=0
    return StaticProbe([0.0, 0.0, 0.0], {'box': [1540.4, 0.0, 0.0]})


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def gatedSleep():
    gate = GatedSleep()
    yield gate
    gate.release.set()


@pytest.fixture
def configFactory():
    return makeConfig
