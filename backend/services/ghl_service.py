import logging
from typing import Any, Dict, List, Optional

import httpx

from config import get_settings

# Set up logging
logger = logging.getLogger(__name__)

GHL_API_VERSION = "2021-07-28"
CLIENT_PORTAL_STEP = "Client Portal"


class GHLAPIError(Exception):
    """A GoHighLevel API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def find_client_portal_page(funnels: List[Dict[str, Any]]) -> Optional[str]:
    """Page id of the first page in the first funnel's "Client Portal" step."""
    if not funnels:
        return None
    for step in funnels[0].get("steps") or []:
        if step.get("name") == CLIENT_PORTAL_STEP:
            pages = step.get("pages") or []
            return pages[0] if pages else None
    return None


class GHLService:
    """Async client for the GoHighLevel (LeadConnector) REST API."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        settings = get_settings()
        self.base_url = settings.ghl_api_domain
        self.client_id = settings.ghl_client_id
        self.client_secret = settings.ghl_client_secret
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=settings.ghl_http_timeout)

    async def __aenter__(self) -> "GHLService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @staticmethod
    def _headers(access_token: str) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Version": GHL_API_VERSION,
            "Authorization": f"Bearer {access_token}",
        }

    async def _request(self, method: str, path: str, action: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            body = e.response.text
            logger.error(f"Error during GHL {action}: {e.response.status_code} {body}")
            message = body
            try:
                data = e.response.json()
                if isinstance(data, dict) and data.get("message"):
                    message = data["message"]
            except ValueError:
                pass
            raise GHLAPIError(f"GHL {action} Failed: {message}", e.response.status_code) from e
        except httpx.RequestError as e:
            logger.error(f"Error during GHL {action}: {str(e)}")
            raise GHLAPIError(f"GHL {action} Failed: {str(e)}") from e

    # OAuth

    async def _token_request(self, data: Dict[str, str], action: str) -> Dict[str, Any]:
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **data,
        }
        response = await self._request(
            "POST", "/oauth/token", action,
            data=payload,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
                "Version": GHL_API_VERSION,
            },
        )
        token_data = response.json()
        if not token_data.get("access_token"):
            raise GHLAPIError(f"GHL {action} Failed: no access_token in response")
        return token_data

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Exchange an authorization code for access and refresh tokens."""
        return await self._token_request(
            {"grant_type": "authorization_code", "code": code},
            "Token Exchange",
        )

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """Exchange a refresh token for a new token set."""
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "Token Refresh",
        )

    async def get_location_access_token(self, company_id: str, location_id: str, agency_token: str) -> str:
        """Issue a location-scoped access token from the agency token."""
        logger.info(f"Generating token for location: {location_id}")
        response = await self._request(
            "POST", "/oauth/locationToken", "Location Token",
            data={"companyId": company_id, "locationId": location_id},
            headers={
                "Accept": "application/json",
                "Version": GHL_API_VERSION,
                "Authorization": f"Bearer {agency_token}",
            },
        )
        access_token = response.json().get("access_token")
        if not access_token:
            raise GHLAPIError("GHL Location Token Failed: no access_token in response", response.status_code)
        return access_token

    # Users

    async def check_user_exists(self, company_id: str, email: str, access_token: str) -> bool:
        response = await self._request(
            "GET", "/users/search", "User Check",
            params={"companyId": company_id, "query": email},
            headers=self._headers(access_token),
        )
        data = response.json() or {}
        return bool(data.get("count"))

    async def create_user(self, access_token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Calling GHL user creation API")
        response = await self._request(
            "POST", "/users/", "User Creation",
            json=payload,
            headers=self._headers(access_token),
        )
        return response.json()

    async def delete_user(self, user_id: str, access_token: str) -> None:
        await self._request(
            "DELETE", f"/users/{user_id}", "User Deletion",
            headers=self._headers(access_token),
        )

    # Locations

    async def create_location(self, access_token: str, account_data: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST", "/locations/", "Account Creation",
            json=account_data,
            headers=self._headers(access_token),
        )
        data = response.json()
        logger.info(f"GHL account creation successful. Account ID: {data.get('id')}")
        return data

    async def get_location(self, location_id: str, access_token: str) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"/locations/{location_id}", "Account Lookup",
            headers=self._headers(access_token),
        )
        data = response.json() or {}
        return data.get("location", data)

    async def delete_location(self, location_id: str, access_token: str) -> None:
        await self._request(
            "DELETE", f"/locations/{location_id}", "Account Deletion",
            params={"deleteTwilioAccount": "true"},
            headers=self._headers(access_token),
        )

    async def update_location_snapshot(
        self,
        location_id: str,
        snapshot_id: str,
        company_id: str,
        access_token: str,
        override: bool = True,
    ) -> Dict[str, Any]:
        logger.info(f"Updating snapshot for location {location_id} with snapshotId {snapshot_id}")
        response = await self._request(
            "PUT", f"/locations/{location_id}", "Snapshot Update",
            json={"companyId": company_id, "snapshot": {"id": snapshot_id, "override": override}},
            headers=self._headers(access_token),
        )
        return response.json()

    # Funnels

    async def get_funnels(self, location_id: str, access_token: str) -> List[Dict[str, Any]]:
        logger.info(f"Fetching GHL funnel list for location: {location_id}")
        response = await self._request(
            "GET", "/funnels/funnel/list", "Funnel List",
            params={"locationId": location_id},
            headers=self._headers(access_token),
        )
        return (response.json() or {}).get("funnels") or []

    # Custom values

    async def get_custom_values(self, location_id: str, access_token: str) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET", f"/locations/{location_id}/customValues", "Custom Values",
            headers=self._headers(access_token),
        )
        return (response.json() or {}).get("customValues") or []

    async def update_custom_value(
        self,
        location_id: str,
        custom_value_id: str,
        name: str,
        value: str,
        access_token: str,
    ) -> None:
        logger.info(f'Updating GHL custom value "{name}"')
        await self._request(
            "PUT", f"/locations/{location_id}/customValues/{custom_value_id}",
            f'Custom Value Update for "{name}"',
            json={"name": name, "value": value},
            headers=self._headers(access_token),
        )


# Dependency to get a GHL client
async def get_ghl_service():
    async with GHLService() as ghl:
        yield ghl
