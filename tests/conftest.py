"""Shared pytest fixtures for Tandem tests."""
import pytest

from tandem.services.engine import MatchmakingEngine


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    """A fresh engine with a 180 s search timeout and a fake clock."""
    return MatchmakingEngine(search_timeout_seconds=180.0, clock=clock)


def connect(engine, *ids, **profile):
    """Connect each id and apply the same profile patch to all of them."""
    for connection_id in ids:
        engine.connect(connection_id)
        if profile:
            engine.update_profile(connection_id, profile)


def events_for(outbound, connection_id):
    """Event names addressed to ``connection_id``, in order."""
    return [o.event for o in outbound if o.to == connection_id]


def payload_for(outbound, connection_id, event):
    for o in outbound:
        if o.to == connection_id and o.event == event:
            return o.payload
    raise AssertionError(f"no {event} for {connection_id} in {outbound}")
