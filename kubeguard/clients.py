"""
Minimal async Kubernetes API client used for SubjectAccessReviews and
cache relists.
"""

from pathlib import Path
from typing import Dict, List, Optional

import backoff
import httpx
from loguru import logger

from kubeguard.admission.review import GroupVersionResource, UserInfo
from kubeguard.config import WebhookConfig
from kubeguard.exceptions import KubeApiError

SAR_PATH = "/apis/authorization.k8s.io/v1/subjectaccessreviews"


def api_path(gvr: GroupVersionResource, namespace: str = "") -> str:
    """REST collection path for a GVR."""
    prefix = f"/api/{gvr.version}" if not gvr.group else f"/apis/{gvr.group}/{gvr.version}"
    if namespace:
        prefix = f"{prefix}/namespaces/{namespace}"
    return f"{prefix}/{gvr.resource}"


class KubeClient:
    """Thin wrapper around httpx.AsyncClient speaking to the API server."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        verify=True,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.http_client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            verify=verify,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: WebhookConfig) -> "KubeClient":
        token = None
        if config.kube_token_path and Path(config.kube_token_path).exists():
            token = Path(config.kube_token_path).read_text().strip()
        else:
            logger.warning(f"Service account token not found at {config.kube_token_path}")

        verify = True
        if config.kube_ca_path and Path(config.kube_ca_path).exists():
            verify = str(config.kube_ca_path)

        return cls(config.kube_api_url, token=token, verify=verify, timeout=config.sar_timeout)

    async def aclose(self):
        await self.http_client.aclose()

    async def create_subject_access_review(
        self,
        user: UserInfo,
        verb: str,
        gvr: GroupVersionResource,
        name: str = "",
        namespace: str = "",
    ) -> bool:
        """Ask the API server whether the user may perform verb on the resource."""
        body = {
            "apiVersion": "authorization.k8s.io/v1",
            "kind": "SubjectAccessReview",
            "spec": {
                "resourceAttributes": {
                    "verb": verb,
                    "namespace": namespace,
                    "version": gvr.version,
                    "resource": gvr.resource,
                    "group": gvr.group,
                    "name": name,
                },
                "user": user.username,
                "groups": user.groups,
                "extra": user.extra,
                "uid": user.uid,
            },
        }
        response = await self.http_client.post(SAR_PATH, json=body)
        data = self._check(response, "create subjectaccessreview")
        status = data.get("status") or {}
        if not isinstance(status, dict):
            raise KubeApiError(f"failed to create subjectaccessreview: unexpected status {status!r}")
        return bool(status.get("allowed", False))

    @backoff.on_exception(backoff.expo, httpx.ConnectError, max_tries=3, max_time=10)
    async def list_objects(self, gvr: GroupVersionResource, namespace: str = "") -> List[Dict]:
        """List every object of a resource, following continue tokens."""
        items: List[Dict] = []
        params: Dict[str, str] = {}
        while True:
            response = await self.http_client.get(api_path(gvr, namespace), params=params)
            data = self._check(response, f"list {gvr.group_resource}")
            page = data.get("items") or []
            if not isinstance(page, list):
                raise KubeApiError(f"failed to list {gvr.group_resource}: items is not a list")
            items.extend(page)
            token = (data.get("metadata") or {}).get("continue")
            if not token:
                return items
            params = {"continue": token}

    @staticmethod
    def _check(response: httpx.Response, action: str) -> Dict:
        if response.status_code >= 400:
            raise KubeApiError(
                f"failed to {action}: {response.status_code} {response.text}", status_code=response.status_code
            )
        try:
            data = response.json()
        except ValueError as e:
            raise KubeApiError(
                f"failed to {action}: undecodable response body", status_code=response.status_code
            ) from e
        if not isinstance(data, dict):
            raise KubeApiError(f"failed to {action}: expected an object", status_code=response.status_code)
        return data
