"""Machine specs, instance handles and state normalization."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class MachineSpec:
    """What the reconciler asks for.

    ``uid`` is assigned once when the machine object is created and never
    reused; it is attached to the remote resource as the idempotency tag.
    """

    name: str
    uid: str
    provider_config: str | bytes | Mapping[str, Any]


class InstanceState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    # Anything else. Treated as "not usable", never as "definitely gone".
    STOPPED = "stopped"


@dataclass
class Instance:
    """Normalized view of a remote instance, built fresh on every call."""

    id: str
    name: str
    status: InstanceState
    addresses: list[str] = field(default_factory=list)


def normalize_state(
    status: str | None, mapping: Mapping[str, InstanceState]
) -> InstanceState:
    """Map a backend-native status onto InstanceState.

    Unknown or missing values fall back to STOPPED because backends add
    statuses without notice.
    """
    if not status:
        return InstanceState.STOPPED
    return mapping.get(status.lower(), InstanceState.STOPPED)
