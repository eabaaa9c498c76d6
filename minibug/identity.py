"""Identity providers: who is the current user for this session."""

from abc import ABC, abstractmethod

import httpx
import structlog
from pydantic import BaseModel, ConfigDict

from minibug.errors import ConfigurationError

logger = structlog.get_logger()

SIGN_UP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signUp"


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str  # stable opaque id, used as comment author and default assignee
    token: str | None = None  # bearer token for the store, when it needs one


class IdentityProvider(ABC):
    @abstractmethod
    async def sign_in(self) -> Identity: ...


class StaticIdentity(IdentityProvider):
    """A configured user id; no remote call."""

    def __init__(self, user_id: str) -> None:
        self._user_id = user_id

    async def sign_in(self) -> Identity:
        if not self._user_id:
            raise ConfigurationError("user_id is empty")
        return Identity(user_id=self._user_id)


class FirebaseAnonymousIdentity(IdentityProvider):
    """Anonymous Firebase Auth sign-up via the Identity Toolkit REST API."""

    def __init__(self, api_key: str, client: httpx.AsyncClient | None = None) -> None:
        if not api_key:
            raise ConfigurationError("firebase_api_key is required")
        self._api_key = api_key
        self._client = client

    async def sign_in(self) -> Identity:
        try:
            if self._client is not None:
                response = await self._post(self._client)
            else:
                async with httpx.AsyncClient(timeout=30) as client:
                    response = await self._post(client)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ConfigurationError(
                f"Anonymous sign-in failed ({exc.response.status_code}): {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ConfigurationError(f"Anonymous sign-in failed: {exc}") from exc

        data = response.json()
        if "localId" not in data:
            raise ConfigurationError("Anonymous sign-in returned no user id")
        logger.info("signed_in_anonymously", user_id=data["localId"])
        return Identity(user_id=data["localId"], token=data.get("idToken"))

    async def _post(self, client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(SIGN_UP_URL, params={"key": self._api_key}, json={"returnSecureToken": True})
