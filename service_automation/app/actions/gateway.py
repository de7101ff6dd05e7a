"""
HTTP client for the business domain API that actions write to.
"""

from typing import Any, Dict, Optional, Sequence

import httpx

from shared.errors import PermanentActionError, TransientActionError
from shared.logging import get_logger
from ..interfaces import DomainActionGateway

TRANSIENT_STATUS_CODES = {408, 425, 429}
NON_RETRYABLE_SERVER_CODES = {501}


class HttpDomainActionGateway(DomainActionGateway):
    """Performs actions through the domain service REST API.

    Timeouts, connection failures, 408, 425, 429 and every 5xx except 501
    are transient; any other non-2xx response is permanent.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.logger = get_logger("automation.gateway")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout, headers=headers)

    async def close(self):
        await self._client.aclose()

    async def create_record(self, workspace_id: str, collection: str, fields: Dict[str, Any]) -> Any:
        return await self._request(
            "POST",
            f"/workspaces/{workspace_id}/collections/{collection}/records",
            json={"fields": fields}
        )

    async def update_record(self, workspace_id: str, collection: str, record_id: str,
                            fields: Dict[str, Any]) -> Any:
        return await self._request(
            "PATCH",
            f"/workspaces/{workspace_id}/collections/{collection}/records/{record_id}",
            json={"fields": fields}
        )

    async def notify(self, workspace_id: str, user_ids: Sequence[str], message: str) -> Any:
        return await self._request(
            "POST",
            f"/workspaces/{workspace_id}/notifications",
            json={"user_ids": list(user_ids), "message": message}
        )

    async def _request(self, method: str, path: str, json: Dict[str, Any]) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise TransientActionError(f"Domain API timeout: {e}", details={"path": path})
        except httpx.TransportError as e:
            raise TransientActionError(f"Domain API unavailable: {e}", details={"path": path})

        if is_transient_status(response.status_code):
            raise TransientActionError(
                f"Domain API returned {response.status_code}",
                details={"path": path, "status_code": response.status_code}
            )
        if response.status_code >= 400:
            self.logger.warning(
                "Domain API rejected action",
                method=method,
                path=path,
                status_code=response.status_code
            )
            raise PermanentActionError(
                f"Domain API returned {response.status_code}",
                details={"path": path, "status_code": response.status_code, "body": response.text[:500]}
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text


def is_transient_status(status_code: int) -> bool:
    if status_code >= 500:
        return status_code not in NON_RETRYABLE_SERVER_CODES
    return status_code in TRANSIENT_STATUS_CODES
