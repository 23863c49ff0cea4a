from typing import Any

import httpx

from kubevirt_actuator.clients.http import RetryPolicy, request_with_retry


MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


def resource_path(
    group_version: str,
    plural: str,
    namespace: str | None = None,
    name: str | None = None,
    subresource: str | None = None,
) -> str:
    prefix = "/api/v1" if group_version == "v1" else f"/apis/{group_version}"
    parts = [prefix]
    if namespace:
        parts.append(f"namespaces/{namespace}")
    parts.append(plural)
    if name:
        parts.append(name)
    if subresource:
        parts.append(subresource)
    return "/".join(parts)


def create_merge_patch(original: dict[str, Any], modified: dict[str, Any]) -> dict[str, Any]:
    """Build an RFC 7386 merge patch turning ``original`` into ``modified``."""
    patch: dict[str, Any] = {}
    for key, value in modified.items():
        if key not in original:
            patch[key] = value
            continue
        previous = original[key]
        if isinstance(value, dict) and isinstance(previous, dict):
            nested = create_merge_patch(previous, value)
            if nested:
                patch[key] = nested
        elif value != previous:
            patch[key] = value
    for key in original:
        if key not in modified:
            patch[key] = None
    return patch


class KubeClient:
    """Thin JSON client for one Kubernetes API server."""

    def __init__(
        self,
        base_url: str,
        retry: RetryPolicy,
        token: str | None = None,
        verify: bool = True,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            verify=verify,
            transport=transport,
        )
        self.retry = retry

    def get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        response = request_with_retry(self.client, "GET", path, self.retry, params=params)
        return response.json()

    def list(self, path: str, params: dict[str, str] | None = None) -> list[dict[str, Any]]:
        return list(self.get(path, params=params).get("items") or [])

    def create(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        response = request_with_retry(self.client, "POST", path, self.retry, json=body)
        return response.json()

    def replace(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        response = request_with_retry(self.client, "PUT", path, self.retry, json=body)
        return response.json()

    def merge_patch(self, path: str, patch: dict[str, Any]) -> dict[str, Any]:
        response = request_with_retry(
            self.client,
            "PATCH",
            path,
            self.retry,
            json=patch,
            headers={"Content-Type": MERGE_PATCH_CONTENT_TYPE},
        )
        return response.json()

    def delete(self, path: str, body: dict[str, Any] | None = None) -> None:
        request_with_retry(self.client, "DELETE", path, self.retry, json=body)
