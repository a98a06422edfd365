import logging
import typing

from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity.aio import DefaultAzureCredential, ManagedIdentityCredential
from pydantic_settings import BaseSettings

from agwcert.exceptions import AuthError

logger = logging.getLogger(__name__)

MANAGEMENT_SCOPE = "https://management.azure.com/.default"


class IdentityProvider:
    """Obtains the Azure credential that the challenge publisher and the certificate installer use.

    The credential is verified up front by requesting a token for the management API, so that
    a broken identity fails the run before anything is ordered.
    """

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["managed", "default"] = "managed"
        """managed identity of the host or the DefaultAzureCredential chain"""
        client_id: typing.Optional[str] = None
        """client id of a user-assigned managed identity"""
        scope: str = MANAGEMENT_SCOPE
        """the scope of the token that is requested to verify the credential"""

    def __init__(self, cfg: Config):
        self._cfg = cfg
        self._credential = None

    def _create_credential(self):
        if self._cfg.type == "default":
            return DefaultAzureCredential(managed_identity_client_id=self._cfg.client_id)
        if self._cfg.client_id:
            return ManagedIdentityCredential(client_id=self._cfg.client_id)
        return ManagedIdentityCredential()

    async def authenticate(self):
        """Creates the credential and verifies that it can obtain a token.

        :raises: :class:`~agwcert.exceptions.AuthError` If no token could be obtained.
        :return: The async Azure credential.
        """
        self._credential = self._create_credential()

        try:
            token = await self._credential.get_token(self._cfg.scope)
        except ClientAuthenticationError as e:
            raise AuthError(f"Authentication failed: {e.message}") from e
        except AzureError as e:
            raise AuthError(f"Could not obtain a token for {self._cfg.scope}: {e}") from e

        logger.info(
            "Authenticated using %s, token expires at %d",
            type(self._credential).__name__,
            token.expires_on,
        )
        return self._credential

    async def close(self):
        if self._credential is not None:
            await self._credential.close()
