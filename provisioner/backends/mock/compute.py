"""Mock DigitalOcean API for testing.

Mirrors the DigitalOceanClient surface and simulates the two behaviours the
provider has to cope with: tags that only become visible some time after the
create call, and describe calls that fail transiently.
"""

from __future__ import annotations

import base64
import hashlib
import threading

from provisioner.backends.digitalocean.client import DigitalOceanAPIError

DEFAULT_REGIONS = [
    {"slug": "fra1", "available": True},
    {"slug": "nyc3", "available": True},
    {"slug": "sfo1", "available": False},
]

DEFAULT_SIZES = [
    {"slug": "s-1vcpu-1gb", "available": True, "regions": ["fra1", "nyc3"]},
    {"slug": "s-8vcpu-16gb", "available": True, "regions": ["nyc3"]},
    {"slug": "m-16vcpu-128gb", "available": False, "regions": ["fra1"]},
]


def _md5_fingerprint(public_key: str) -> str:
    digest = hashlib.md5(base64.b64decode(public_key.split()[1])).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


def _not_found(path: str) -> DigitalOceanAPIError:
    return DigitalOceanAPIError(
        404, "The resource you were accessing could not be found.", backend="digitalocean", resource=path
    )


class FakeDigitalOceanAPI:
    """In-memory stand-in for DigitalOceanClient.

    Calling the instance returns itself, so it can be passed directly as a
    provider's ``client_factory``.

    ``tag_delay``: get_droplet calls on a new droplet before its tags show.
    ``get_failures``: get_droplet calls that fail before any succeeds.
    """

    def __init__(self, tag_delay: int = 0, get_failures: int = 0):
        self.regions = [dict(r) for r in DEFAULT_REGIONS]
        self.sizes = [dict(s) for s in DEFAULT_SIZES]
        self.tag_delay = tag_delay
        self.get_failures = get_failures
        self.reject_create: DigitalOceanAPIError | None = None

        self.droplets: dict[int, dict] = {}
        self.keys: dict[str, dict] = {}
        self.tokens: list[str] = []
        self.created: list[dict] = []
        self.deleted: list[int] = []
        self.get_calls = 0
        self.key_creates = 0

        self._pending_tags: dict[int, int] = {}
        self._next_id = 1000
        self._lock = threading.Lock()

    def __call__(self, token: str) -> FakeDigitalOceanAPI:
        self.tokens.append(token)
        return self

    # --- Test helpers ---

    def add_droplet(self, name: str, tags: list[str], status: str = "active", ip: str = "10.0.0.1") -> dict:
        with self._lock:
            droplet_id = self._next_id
            self._next_id += 1
        droplet = {
            "id": droplet_id,
            "name": name,
            "status": status,
            "tags": list(tags),
            "networks": {"v4": [{"ip_address": ip, "type": "public"}], "v6": []},
        }
        self.droplets[droplet_id] = droplet
        return droplet

    def _visible(self, droplet: dict) -> dict:
        view = dict(droplet)
        if self._pending_tags.get(droplet["id"], 0) > 0:
            view["tags"] = []
            view["status"] = "new"
            view["networks"] = {"v4": [], "v6": []}
        return view

    # --- Catalog ---

    def list_regions(self) -> list[dict]:
        return list(self.regions)

    def list_sizes(self) -> list[dict]:
        return list(self.sizes)

    # --- Droplets ---

    def list_droplets(self, tag_name: str | None = None) -> list[dict]:
        views = [self._visible(d) for d in self.droplets.values()]
        if tag_name:
            views = [d for d in views if tag_name in d["tags"]]
        return views

    def get_droplet(self, droplet_id: int | str) -> dict:
        self.get_calls += 1
        if self.get_failures > 0:
            self.get_failures -= 1
            raise DigitalOceanAPIError(503, "Service Unavailable", backend="digitalocean")

        droplet = self.droplets.get(int(droplet_id))
        if droplet is None:
            raise _not_found(f"/v2/droplets/{droplet_id}")

        pending = self._pending_tags.get(droplet["id"], 0)
        view = self._visible(droplet)
        if pending > 0:
            self._pending_tags[droplet["id"]] = pending - 1
        return view

    def create_droplet(self, body: dict) -> dict:
        if self.reject_create is not None:
            raise self.reject_create
        self.created.append(body)
        droplet = self.add_droplet(body["name"], body.get("tags", []), status="active", ip="203.0.113.10")
        self._pending_tags[droplet["id"]] = self.tag_delay
        provisional = dict(droplet, status="new", tags=[], networks={"v4": [], "v6": []})
        return provisional

    def delete_droplet(self, droplet_id: int | str) -> None:
        if self.droplets.pop(int(droplet_id), None) is None:
            raise _not_found(f"/v2/droplets/{droplet_id}")
        self.deleted.append(int(droplet_id))

    # --- SSH keys ---

    def get_key(self, fingerprint: str) -> dict:
        with self._lock:
            key = self.keys.get(fingerprint)
        if key is None:
            raise _not_found(f"/v2/account/keys/{fingerprint}")
        return dict(key)

    def create_key(self, name: str, public_key: str) -> dict:
        fingerprint = _md5_fingerprint(public_key)
        with self._lock:
            if fingerprint in self.keys:
                raise DigitalOceanAPIError(
                    422, "SSH Key is already in use on your account", backend="digitalocean"
                )
            self.key_creates += 1
            key = {"id": len(self.keys) + 1, "name": name, "fingerprint": fingerprint, "public_key": public_key}
            self.keys[fingerprint] = key
        return dict(key)
