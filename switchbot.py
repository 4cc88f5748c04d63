import base64
import hashlib
import hmac
import logging
import time
from typing import Any
import uuid

import httpx

from audit.decorators import audit_scope
from models.audit import EventSubtype, EventType
from util import env_var

logger = logging.getLogger(__name__)

SWITCHBOT_API_URL = "https://api.switch-bot.com/v1.1"


class SwitchBotError(Exception):
    """Raised when the SwitchBot cloud API rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def generate_signature(token: str, secret: str, t: str, nonce: str) -> str:
    """Base64 HMAC-SHA256 of token + t + nonce, keyed with the secret."""
    digest = hmac.new(
        secret.encode("utf-8"), (token + t + nonce).encode("utf-8"), hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def create_auth_headers(token: str, secret: str) -> dict[str, str]:
    t = str(int(time.time() * 1000))
    nonce = str(uuid.uuid4())
    return {
        "Authorization": token,
        "sign": generate_signature(token, secret, t, nonce),
        "t": t,
        "nonce": nonce,
        "Content-Type": "application/json",
    }


class SwitchBotClient:
    """Signed-request wrapper around the SwitchBot v1.1 cloud API."""

    def __init__(
        self,
        token: str | None = None,
        secret: str | None = None,
        base_url: str = SWITCHBOT_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = token or env_var("SWITCHBOT_TOKEN")
        self._secret = secret or env_var("SWITCHBOT_SECRET")
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> Any:
        headers = create_auth_headers(self._token, self._secret)
        async with httpx.AsyncClient(transport=self._transport) as client:
            try:
                resp = await client.request(
                    method, f"{self._base_url}{path}", headers=headers, json=json
                )
            except httpx.HTTPError as error:
                logger.warning("SwitchBot request %s %s failed: %s", method, path, error)
                raise SwitchBotError(f"SwitchBot API request failed: {error}") from error

        if not resp.is_success:
            try:
                message = resp.json().get("message") or "Unknown error"
            except ValueError:
                message = "Unknown error"
            raise SwitchBotError(
                f"SwitchBot API Error: {resp.status_code} - {message}",
                status_code=resp.status_code,
            )
        return resp.json()

    async def get_devices(self) -> dict[str, Any]:
        return await self._request("GET", "/devices")

    async def get_device_status(self, device_id: str) -> dict[str, Any]:
        """Fetches the status envelope for one device.

        The reading itself sits under "body", e.g. {"online": true, "power": "on",
        "temperature": 24.5, ...}.
        """
        if not device_id or not device_id.strip():
            raise ValueError("Device ID is required")
        return await self._request("GET", f"/devices/{device_id}/status")

    @audit_scope(
        event_type=EventType.DEVICE_CONTROL,
        end_event=EventSubtype.DEVICE_COMMAND,
        error_event=EventSubtype.DEVICE_COMMAND_FAILED,
        device_id="device_id",
        command="command",
    )
    async def send_command(
        self,
        device_id: str,
        command: str,
        parameter: Any = None,
        command_type: str = "command",
    ) -> dict[str, Any]:
        """Send a command to a device.

        Args:
            device_id: The SwitchBot device id
            command: Command name, e.g. "turnOn"
            parameter: Command parameter; SwitchBot expects "default" when there is none
            command_type: "command" or "customize" for infrared remotes
        """
        if not device_id or not device_id.strip():
            raise ValueError("Device ID is required")
        if not command or not command.strip():
            raise ValueError("Command is required")

        body = {
            "command": command,
            "parameter": "default" if parameter is None else parameter,
            "commandType": command_type,
        }
        return await self._request("POST", f"/devices/{device_id}/commands", json=body)

    async def get_scenes(self) -> dict[str, Any]:
        return await self._request("GET", "/scenes")

    @audit_scope(
        event_type=EventType.DEVICE_CONTROL,
        end_event=EventSubtype.SCENE_EXECUTED,
        error_event=EventSubtype.DEVICE_COMMAND_FAILED,
        scene_id="scene_id",
    )
    async def execute_scene(self, scene_id: str) -> dict[str, Any]:
        if not scene_id or not scene_id.strip():
            raise ValueError("Scene ID is required")
        return await self._request("POST", f"/scenes/{scene_id}/execute")


def status_body(status: Any) -> dict[str, Any]:
    """Unwraps the reading from a status envelope; bare readings pass through."""
    if isinstance(status, dict):
        body = status.get("body")
        if isinstance(body, dict):
            return body
        return status
    return {}
