"""Minimal DigitalOcean API v2 client built on requests."""

from __future__ import annotations

import logging

import requests

from provisioner.core.errors import BackendTransportError
from provisioner.shared.config import DIGITALOCEAN_API_URL, HTTP_TIMEOUT

logger = logging.getLogger(__name__)

PER_PAGE = 200


class DigitalOceanAPIError(BackendTransportError):
    """Non-2xx response from the DigitalOcean API."""

    def __init__(self, status_code: int, message: str, **kwargs):
        super().__init__(f"digitalocean api returned {status_code}: {message}", **kwargs)
        self.status_code = status_code
        self.api_message = message


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("id") or body)
    return str(body)


class DigitalOceanClient:
    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        session: requests.Session | None = None,
        timeout: float = HTTP_TIMEOUT,
    ):
        self._base_url = (base_url or DIGITALOCEAN_API_URL()).rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        )

    def __repr__(self) -> str:
        return f"DigitalOceanClient(base_url={self._base_url!r})"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(
                method, url, params=params, json=json, timeout=self._timeout
            )
        except requests.RequestException as exc:
            raise BackendTransportError(
                f"{method} {path} failed: {exc}", backend="digitalocean", cause=exc
            ) from exc

        if response.status_code >= 400:
            raise DigitalOceanAPIError(
                response.status_code,
                _error_message(response),
                backend="digitalocean",
                resource=path,
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise BackendTransportError(
                f"{method} {path} returned a non-JSON body", backend="digitalocean", resource=path, cause=exc
            ) from exc

    def _get_one(self, method: str, path: str, key: str, *, json: dict | None = None) -> dict:
        body = self._request(method, path, json=json)
        item = body.get(key) if isinstance(body, dict) else None
        if not isinstance(item, dict):
            raise BackendTransportError(
                f"{method} {path} response has no {key!r}", backend="digitalocean", resource=path
            )
        return item

    def _list(self, path: str, key: str, params: dict | None = None) -> list[dict]:
        items: list[dict] = []
        page = 1
        while True:
            query = dict(params or {}, page=page, per_page=PER_PAGE)
            body = self._request("GET", path, params=query)
            items.extend(body.get(key, []))
            if not body.get("links", {}).get("pages", {}).get("next"):
                return items
            page += 1

    # --- Catalog ---

    def list_regions(self) -> list[dict]:
        return self._list("/v2/regions", "regions")

    def list_sizes(self) -> list[dict]:
        return self._list("/v2/sizes", "sizes")

    # --- Droplets ---

    def list_droplets(self, tag_name: str | None = None) -> list[dict]:
        params = {"tag_name": tag_name} if tag_name else None
        return self._list("/v2/droplets", "droplets", params)

    def get_droplet(self, droplet_id: int | str) -> dict:
        return self._get_one("GET", f"/v2/droplets/{droplet_id}", "droplet")

    def create_droplet(self, body: dict) -> dict:
        return self._get_one("POST", "/v2/droplets", "droplet", json=body)

    def delete_droplet(self, droplet_id: int | str) -> None:
        self._request("DELETE", f"/v2/droplets/{droplet_id}")

    # --- SSH keys ---

    def get_key(self, fingerprint: str) -> dict:
        return self._get_one("GET", f"/v2/account/keys/{fingerprint}", "ssh_key")

    def create_key(self, name: str, public_key: str) -> dict:
        return self._get_one(
            "POST", "/v2/account/keys", "ssh_key", json={"name": name, "public_key": public_key}
        )
