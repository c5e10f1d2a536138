"""
CRM Bridge - Salesforce REST client
OAuth2 password-grant session plus sObject CRUD over httpx

Every call returns a (status_code, body) pair; status interpretation is the
gateway's job. Transport errors (httpx.HTTPError) propagate.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from ..config import Settings, get_settings
from ..core.errors import ConfigurationError

logger = logging.getLogger("crm_bridge.salesforce")

Response = Tuple[int, Any]

# Entity kind -> sObject type
SOBJECT_TYPES = {
    "user": "Contact",
    "company": "Account",
}


class SalesforceAuthError(httpx.HTTPError):
    """Token exchange was refused"""


class SalesforceClient:
    """
    Owns the Salesforce session: token exchange, token reuse, and one
    re-authentication when a call comes back 401.

    Safe for concurrent use: token refresh is serialized by a lock.
    """

    TOKEN_PATH = "/services/oauth2/token"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = None
        self._instance_url: Optional[str] = self.settings.SALESFORCE_INSTANCE_URL
        self._auth_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self):
        """Open the HTTP client. Authentication happens lazily on the first call."""
        missing = [
            name for name in (
                "SALESFORCE_CLIENT_ID",
                "SALESFORCE_CLIENT_SECRET",
                "SALESFORCE_USERNAME",
                "SALESFORCE_PASSWORD",
            )
            if not getattr(self.settings, name)
        ]
        if missing:
            raise ConfigurationError(f"Salesforce settings missing: {', '.join(missing)}")

        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.CRM_TIMEOUT,
                transport=self._transport,
            )

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Salesforce client closed")

    def sobject(self, entity: str) -> "SObjectClient":
        """CRUD surface for an entity kind (user -> Contact, company -> Account)"""
        return SObjectClient(self, SOBJECT_TYPES[entity])

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    async def authenticate(self) -> str:
        """Exchange credentials for a bearer token"""
        if self._client is None:
            await self.start()

        s = self.settings
        response = await self._client.post(
            f"{s.SALESFORCE_LOGIN_URL.rstrip('/')}{self.TOKEN_PATH}",
            data={
                "grant_type": "password",
                "client_id": s.SALESFORCE_CLIENT_ID,
                "client_secret": s.SALESFORCE_CLIENT_SECRET,
                "username": s.SALESFORCE_USERNAME,
                "password": f"{s.SALESFORCE_PASSWORD}{s.SALESFORCE_TOKEN}",
            },
        )
        if response.status_code != 200:
            raise SalesforceAuthError(
                f"Salesforce token exchange failed: {response.status_code} - {response.text}"
            )

        payload = response.json()
        if not payload.get("access_token"):
            raise SalesforceAuthError("Salesforce token response carried no access_token")
        self._access_token = payload["access_token"]
        if not s.SALESFORCE_INSTANCE_URL:
            self._instance_url = payload.get("instance_url")
        if not self._instance_url:
            raise SalesforceAuthError("Salesforce token response carried no instance_url")
        logger.info(f"Salesforce token OK (instance: {self._instance_url})")
        return self._access_token

    async def _token(self, stale: Optional[str] = None) -> str:
        async with self._auth_lock:
            # Another caller may already have refreshed the stale token
            if self._access_token is None or self._access_token == stale:
                await self.authenticate()
            return self._access_token

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return (
            f"{self._instance_url.rstrip('/')}/services/data/"
            f"{self.settings.SALESFORCE_API_VERSION}{path}"
        )

    def _streaming_url(self) -> str:
        # the Bayeux endpoint takes the bare version number: /cometd/58.0
        version = self.settings.SALESFORCE_API_VERSION.lstrip("v")
        return f"{self._instance_url.rstrip('/')}/cometd/{version}"

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Response:
        """
        Call the REST API under /services/data/<version>.

        Returns:
            (status_code, body) where body is parsed JSON, text, or None for 204
        """
        response = await self._authorized(method, lambda: self._url(path), json=json, params=params)
        return response.status_code, _body(response)

    async def query_all(self, soql: str) -> Response:
        """SOQL through /queryAll, which also returns deleted records"""
        return await self.request("GET", "/queryAll", params={"q": soql})

    async def streaming(self, messages: List[Dict[str, Any]], timeout: float) -> Response:
        """
        POST Bayeux messages to the Streaming API.

        Long-polling /meta/connect calls can legitimately take close to two
        minutes, so the caller picks the read timeout.
        """
        response = await self._authorized(
            "POST",
            self._streaming_url,
            json=messages,
            timeout=timeout,
        )
        return response.status_code, _body(response)

    async def _authorized(
        self,
        method: str,
        url: Callable[[], str],
        **kwargs,
    ) -> httpx.Response:
        """Send with the bearer token; re-authenticate once on 401"""
        token = await self._token()
        response = await self._send(method, url(), token, **kwargs)

        if response.status_code == 401:
            logger.info("Salesforce token rejected, re-authenticating")
            token = await self._token(stale=token)
            # the instance URL may have changed with the new token
            response = await self._send(method, url(), token, **kwargs)
        return response

    async def _send(self, method: str, url: str, token: str, **kwargs) -> httpx.Response:
        return await self._client.request(
            method,
            url,
            headers={"Authorization": f"Bearer {token}"},
            **kwargs,
        )


class SObjectClient:
    """create/get/update/delete for one sObject type"""

    def __init__(self, client: SalesforceClient, sobject_type: str):
        self.client = client
        self.sobject_type = sobject_type

    @property
    def base_path(self) -> str:
        return f"/sobjects/{self.sobject_type}"

    async def create(self, payload: Dict[str, Any]) -> Response:
        return await self.client.request("POST", self.base_path, json=payload)

    async def get(self, record_id: str) -> Response:
        return await self.client.request("GET", f"{self.base_path}/{record_id}")

    async def update(self, record_id: str, payload: Dict[str, Any]) -> Response:
        return await self.client.request("PATCH", f"{self.base_path}/{record_id}", json=payload)

    async def delete(self, record_id: str) -> Response:
        return await self.client.request("DELETE", f"{self.base_path}/{record_id}")


def _body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
