"""Creation confirmation.

Backends accept a create call well before the new resource is queryable
with its final attributes; tags in particular may show up late. Returning
the provisional handle right away would let the next ``get`` miss the
instance and trigger a duplicate create, so ``create`` polls describe-by-ID
until the uid tag is visible.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import TypeVar

from provisioner.core.errors import (
    BackendTransportError,
    CreationCancelledError,
    CreationConfirmationTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CREATE_CHECK_PERIOD = 10
CREATE_CHECK_TIMEOUT = 5 * 60
CREATE_CHECK_FAILED_WAIT_PERIOD = 10


def _pause(seconds: float, cancel: threading.Event | None, instance_id: str, backend: str | None) -> None:
    if seconds <= 0:
        return
    if cancel is None:
        time.sleep(seconds)
    elif cancel.wait(seconds):
        raise CreationCancelledError(
            f"wait for instance {instance_id!r} was cancelled",
            backend=backend,
            resource=instance_id,
        )


def wait_for_creation(
    describe: Callable[[], T],
    instance_id: str,
    uid: str,
    tags_of: Callable[[T], Iterable[str]],
    *,
    period: float = CREATE_CHECK_PERIOD,
    timeout: float = CREATE_CHECK_TIMEOUT,
    failed_wait: float = CREATE_CHECK_FAILED_WAIT_PERIOD,
    cancel: threading.Event | None = None,
    backend: str | None = None,
) -> T:
    """Poll ``describe`` until ``uid`` is among the resource's tags.

    Returns the last described resource. Transport errors from ``describe``
    cost one extra ``failed_wait`` and are retried until ``timeout``, after
    which CreationConfirmationTimeoutError is raised. Setting ``cancel``
    aborts the wait with CreationCancelledError.
    """
    deadline = time.monotonic() + timeout
    attempt = 0

    while True:
        if cancel is not None and cancel.is_set():
            raise CreationCancelledError(
                f"wait for instance {instance_id!r} was cancelled",
                backend=backend,
                resource=instance_id,
            )
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise CreationConfirmationTimeoutError(instance_id, timeout, backend=backend)

        _pause(min(period, remaining), cancel, instance_id, backend)
        attempt += 1

        try:
            resource = describe()
        except BackendTransportError as exc:
            logger.warning(
                "instance %s got created but fetching its status failed (attempt %d): %s",
                instance_id,
                attempt,
                exc,
            )
            _pause(min(failed_wait, deadline - time.monotonic()), cancel, instance_id, backend)
            continue

        if uid in set(tags_of(resource)):
            logger.debug("instance %s got fully created after %d checks", instance_id, attempt)
            return resource

        logger.debug("waiting until instance %s got fully created...", instance_id)
