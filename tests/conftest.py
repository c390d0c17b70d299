"""Shared fixtures: a controllable clock for token expiry tests."""

import pytest


class FakeClock:
    """Callable clock returning epoch seconds that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
