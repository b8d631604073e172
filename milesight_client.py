"""HTTP client for the Milesight device-management OpenAPI."""
import logging
import requests
from typing import Any, Dict, List, Optional, Tuple

from config import settings

logger = logging.getLogger(__name__)

DEVICES_PATH = "/device/openapi/v1/devices"
LOGS_SEARCH_PATH = "/data/openapi/v1/logs/search"
ACCOUNT_INFO_PATH = "/uc/account/api/v1/account/info"
TOKEN_PATH = "/oauth/token"


class MilesightAPIError(Exception):
    """Non-2xx response, network failure or timeout talking to Milesight."""

    def __init__(self, message: str, url: Optional[str] = None,
                 status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.body = body


def _timeout() -> int:
    return settings.milesight_http_timeout_seconds


def _send(method: str, url: str, **kwargs) -> requests.Response:
    try:
        response = requests.request(method, url, timeout=_timeout(), **kwargs)
    except requests.RequestException as e:
        logger.error(f"Milesight request {method} {url} failed: {e}")
        raise MilesightAPIError(f"Request to Milesight failed: {e}", url=url) from e

    if not 200 <= response.status_code < 300:
        body = response.text
        logger.error(f"Milesight request {method} {url} returned HTTP {response.status_code}: {body}")
        raise MilesightAPIError(
            f"Milesight API returned HTTP {response.status_code}",
            url=url,
            status_code=response.status_code,
            body=body,
        )
    return response


def _json_or_none(response: requests.Response) -> Any:
    if not response.content or not response.content.strip():
        return None
    try:
        return response.json()
    except ValueError as e:
        raise MilesightAPIError(
            "Milesight API returned a non-JSON body",
            url=response.url,
            status_code=response.status_code,
            body=response.text,
        ) from e


def unwrap_data(response: Any) -> Any:
    """Return ``response["data"]`` when the API wrapped its result, else the response itself."""
    if isinstance(response, dict) and "data" in response:
        return response["data"]
    return response


def normalize_list_response(response: Any) -> Tuple[List[Dict[str, Any]], Optional[int]]:
    """Extract a list of items and a total from the envelopes the API is known to use.

    Handles ``data.content``, ``data.list``, ``content``, ``list`` and a bare
    array. Anything unrecognised yields an empty result. The total is None
    when the API does not report one.
    """
    if isinstance(response, list):
        return response, None
    if not isinstance(response, dict):
        return [], 0

    containers = []
    if isinstance(response.get("data"), dict):
        containers.append(response["data"])
    elif isinstance(response.get("data"), list):
        return response["data"], None
    containers.append(response)

    for container in containers:
        for key in ("content", "list"):
            items = container.get(key)
            if isinstance(items, list):
                total = container.get("total")
                if not isinstance(total, int):
                    total = container.get("totalElements")
                return items, total
    return [], 0


def request_token(base_url: str, client_id: str, client_secret: str) -> Dict[str, Any]:
    """Request a bearer token with the client-credentials grant.

    Returns a dict with ``access_token``, ``refresh_token`` (may be None),
    ``expires_in`` (seconds) and ``token_type``.
    """
    url = f"{base_url.rstrip('/')}{TOKEN_PATH}"
    form = {
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
    }
    response = _send(
        "POST",
        url,
        data=form,
        headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
    )
    body = unwrap_data(_json_or_none(response)) or {}

    access_token = body.get("access_token") or body.get("accessToken")
    if not access_token:
        raise MilesightAPIError(
            "Token response did not contain an access token",
            url=url,
            status_code=response.status_code,
            body=response.text,
        )

    expires_in = body.get("expires_in") or body.get("expiresIn") or settings.milesight_default_token_ttl_seconds
    return {
        "access_token": access_token,
        "refresh_token": body.get("refresh_token") or body.get("refreshToken"),
        "expires_in": int(expires_in),
        "token_type": body.get("token_type") or body.get("tokenType") or "Bearer",
    }


class MilesightClient:
    """Bearer-authenticated calls against one Milesight tenant."""

    def __init__(self, base_url: str, access_token: str):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        kwargs: Dict[str, Any] = {"headers": self._headers()}
        if body is not None:
            kwargs["json"] = body
        return _json_or_none(_send(method, url, **kwargs))

    def verify_token(self) -> bool:
        """Check the token against the account-info endpoint."""
        try:
            self._request("GET", ACCOUNT_INFO_PATH)
            return True
        except MilesightAPIError as e:
            logger.warning(f"Milesight token verification failed: {e}")
            return False

    def search_devices(self, page_number: int = 1, page_size: int = 20, sn: Optional[str] = None,
                       dev_eui: Optional[str] = None, imei: Optional[str] = None,
                       name: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        body: Dict[str, Any] = {"pageSize": page_size, "pageNumber": page_number}
        if sn:
            body["sn"] = sn
        if dev_eui:
            body["devEUI"] = dev_eui
        if imei:
            body["imei"] = imei
        if name:
            body["name"] = name
        return normalize_list_response(self._request("POST", f"{DEVICES_PATH}/search", body))

    def add_device(self, device: Dict[str, Any]) -> Any:
        return unwrap_data(self._request("POST", DEVICES_PATH, device))

    def get_device(self, device_id: str) -> Any:
        return unwrap_data(self._request("GET", f"{DEVICES_PATH}/{device_id}"))

    def update_device(self, device_id: str, changes: Dict[str, Any]) -> Any:
        return unwrap_data(self._request("PUT", f"{DEVICES_PATH}/{device_id}", changes))

    def delete_device(self, device_id: str) -> Any:
        result = self._request("DELETE", f"{DEVICES_PATH}/{device_id}")
        return result if result is not None else {"success": True}

    def get_device_config(self, device_id: str) -> Any:
        return unwrap_data(self._request("GET", f"{DEVICES_PATH}/{device_id}/config"))

    def update_device_config(self, device_id: str, properties: Dict[str, Any]) -> Any:
        return unwrap_data(self._request("PUT", f"{DEVICES_PATH}/{device_id}/config", {"properties": properties}))

    def trigger_firmware_upgrade(self, device_id: str, firmware_version: str,
                                 firmware_file_id: Optional[str] = None,
                                 release_notes: Optional[str] = None) -> Any:
        body: Dict[str, Any] = {"firmwareVersion": firmware_version}
        if firmware_file_id:
            body["firmwareFileId"] = firmware_file_id
        if release_notes:
            body["releaseNotes"] = release_notes
        return unwrap_data(self._request("POST", f"{DEVICES_PATH}/{device_id}/firmware/upgrade", body))

    def search_logs(self, dev_euis: Optional[List[str]] = None, device_ids: Optional[List[str]] = None,
                    sns: Optional[List[str]] = None, page_size: int = 20) -> List[Dict[str, Any]]:
        """Most recent device log entries, newest first."""
        body: Dict[str, Any] = {
            "pageSize": page_size,
            "pageNumber": 1,
            "orders": [{"column": "ts", "direction": "DESC"}],
        }
        if dev_euis:
            body["devEUIs"] = dev_euis
        if device_ids:
            body["deviceIds"] = device_ids
        if sns:
            body["sns"] = sns
        items, _ = normalize_list_response(self._request("POST", LOGS_SEARCH_PATH, body))
        return items
