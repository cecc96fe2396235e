# tests/conftest.py
import pytest
from pyspark import SparkConf, SparkContext


@pytest.fixture(scope="session")
def sc():
    conf = SparkConf().setMaster("local[2]").setAppName("gradient-gmm-tests")
    context = SparkContext.getOrCreate(conf)
    context.setLogLevel("ERROR")
    yield context
    context.stop()


class BroadcastRecorder:
    """Every broadcast made through the context, and which ones were destroyed."""

    def __init__(self):
        self.values = []
        self._destroyed = []

    def track(self, bc, value):
        index = len(self.values)
        self.values.append(value)
        self._destroyed.append(False)
        destroy = bc.destroy

        def tracked_destroy(*args, **kwargs):
            self._destroyed[index] = True
            return destroy(*args, **kwargs)

        bc.destroy = tracked_destroy
        return bc

    @property
    def live(self):
        return [v for v, done in zip(self.values, self._destroyed) if not done]

    def count(self, cls):
        return sum(isinstance(v, cls) for v in self.values)


@pytest.fixture
def broadcasts(sc, monkeypatch):
    recorder = BroadcastRecorder()
    broadcast = sc.broadcast
    monkeypatch.setattr(sc, "broadcast", lambda value: recorder.track(broadcast(value), value))
    return recorder
