"""Device authentication and credential persistence for Script Agent."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .errors import AuthenticationFailure


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    token: str
    issued_to: str


class AuthenticationCache:
    """The current credential, persisted across restarts.

    The file holds one token per device id so that several agents (or a
    re-provisioned device) can share a state directory.
    """

    def __init__(self, path: Path, device_id: str) -> None:
        self.path = Path(path)
        self.device_id = device_id
        self._credential: Optional[Credential] = None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def token(self) -> Optional[str]:
        return self._credential.token if self._credential else None

    def load(self) -> Optional[Credential]:
        """Read the persisted token for this device, if there is one."""
        data = self._read()
        token = data.get(self.device_id)
        if isinstance(token, str) and token:
            self._credential = Credential(token=token, issued_to=self.device_id)
            logger.info("Loaded stored credential for %s", self.device_id)
        else:
            self._credential = None
        return self._credential

    def store(self, token: str) -> Credential:
        """Replace the credential and persist it."""
        if not token:
            raise ValueError("token must be non-empty")
        credential = Credential(token=token, issued_to=self.device_id)
        data = self._read()
        data[self.device_id] = token
        self._write(data)
        self._credential = credential
        return credential

    def _read(self) -> Dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable credential file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".credentials-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise


class DeviceAuthenticator:
    """Registers the device with the controller's HTTP endpoint to obtain a token."""

    def __init__(
        self,
        auth_url: str,
        timeout: float = 10.0,
        cooldown: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.auth_url = auth_url
        self.timeout = timeout
        self.cooldown = cooldown
        self._client = client
        self._owns_client = client is None
        self._last_attempt: Optional[float] = None
        self._in_flight = False

    def should_attempt(self, now: Optional[float] = None) -> bool:
        """False while an attempt is running or the cooldown has not elapsed."""
        if self._in_flight:
            return False
        if self._last_attempt is None:
            return True
        now = time.monotonic() if now is None else now
        return now - self._last_attempt >= self.cooldown

    async def authenticate(self, device_info: Dict[str, Any]) -> str:
        """POST the device description and return the issued token.

        Raises:
            AuthenticationFailure: on transport errors, non-2xx responses or
                a body without a token.
        """
        self._in_flight = True
        self._last_attempt = time.monotonic()
        try:
            client = self._get_client()
            try:
                response = await client.post(
                    self.auth_url,
                    json=device_info,
                    timeout=self.timeout,
                )
            except httpx.HTTPError as e:
                raise AuthenticationFailure(f"request failed: {e}") from e

            if not response.is_success:
                raise AuthenticationFailure(f"HTTP {response.status_code}")

            try:
                body = response.json()
            except ValueError as e:
                raise AuthenticationFailure("response is not JSON") from e

            token = body.get("token") if isinstance(body, dict) else None
            if not isinstance(token, str) or not token:
                raise AuthenticationFailure("response has no token")
            return token
        finally:
            self._in_flight = False

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers={"Content-Type": "application/json"})
        return self._client
