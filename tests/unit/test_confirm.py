"""Unit tests for the creation confirmation loop."""

from __future__ import annotations

import threading

import pytest

from provisioner.core import confirm
from provisioner.core.errors import (
    BackendTransportError,
    CreationCancelledError,
    CreationConfirmationTimeoutError,
)

UID = "uid-123"


class Describer:
    """Returns tags only from the ``visible_after``-th call on."""

    def __init__(self, visible_after=1, failures=0):
        self.visible_after = visible_after
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise BackendTransportError("503")
        tags = [UID] if self.calls >= self.visible_after else []
        return {"id": 7, "tags": tags}


def _tags(resource):
    return resource["tags"]


def _wait(describe, **kwargs):
    kwargs.setdefault("period", 0.01)
    kwargs.setdefault("timeout", 1)
    kwargs.setdefault("failed_wait", 0.01)
    return confirm.wait_for_creation(describe, "7", UID, _tags, **kwargs)


def test_returns_once_tag_is_visible():
    describe = Describer(visible_after=3)

    resource = _wait(describe)

    assert resource["tags"] == [UID]
    assert describe.calls == 3


def test_times_out_and_stops_polling():
    describe = Describer(visible_after=10**6)

    with pytest.raises(CreationConfirmationTimeoutError) as exc_info:
        _wait(describe, timeout=0.1)

    assert exc_info.value.instance_id == "7"
    assert exc_info.value.timeout == 0.1
    calls = describe.calls
    assert calls >= 1
    threading.Event().wait(0.05)
    assert describe.calls == calls


def test_transient_describe_errors_are_retried():
    describe = Describer(visible_after=1, failures=2)

    resource = _wait(describe)

    assert resource["tags"] == [UID]
    assert describe.calls == 3


def test_failed_describe_costs_an_extra_wait(monkeypatch):
    pauses = []
    monkeypatch.setattr(confirm, "_pause", lambda seconds, *args: pauses.append(round(seconds, 2)))
    describe = Describer(visible_after=1, failures=1)

    _wait(describe, period=5, failed_wait=7, timeout=100)

    assert pauses == [5, 7, 5]


def test_persistent_errors_end_in_timeout():
    describe = Describer(failures=10**6)

    with pytest.raises(CreationConfirmationTimeoutError):
        _wait(describe, timeout=0.1)


def test_other_errors_propagate_immediately():
    def describe():
        raise KeyError("droplet")

    with pytest.raises(KeyError):
        _wait(describe)


def test_cancel_before_start_raises():
    cancel = threading.Event()
    cancel.set()
    describe = Describer()

    with pytest.raises(CreationCancelledError):
        _wait(describe, cancel=cancel)

    assert describe.calls == 0


def test_cancel_interrupts_the_wait():
    cancel = threading.Event()
    describe = Describer(visible_after=10**6)
    timer = threading.Timer(0.05, cancel.set)
    timer.start()

    with pytest.raises(CreationCancelledError):
        _wait(describe, cancel=cancel, period=0.02, timeout=30)

    timer.join()
