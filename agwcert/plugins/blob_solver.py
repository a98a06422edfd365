import logging
import typing

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient

from agwcert.client.challenge_solver import ChallengeSolver
from agwcert.exceptions import PublishError
from agwcert.models import ChallengeType
from agwcert.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)

"""This module contains an HTTP-01 challenge solver that publishes the challenge responses to an Azure
Storage blob container.

The container is expected to be reachable through the Application Gateway, e.g. via a path based rule that
routes ``/.well-known/acme-challenge/*`` to the storage account's blob endpoint.
"""


@PluginRegistry.register_plugin("azure_blob")
class AzureBlobSolver(ChallengeSolver):
    """Azure Storage HTTP-01 challenge solver.

    Writes the key authorization to the blob ``{prefix}/{token}`` with content type *text/plain* and deletes
    it again during cleanup.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.HTTP_01])
    """The types of challenges that the solver supports."""

    class Config(ChallengeSolver.Config):
        type: typing.Literal["azure_blob"] = "azure_blob"
        """The type of challenge solver"""
        account_url: str
        """The storage account's blob endpoint, e.g. https://example.blob.core.windows.net"""
        container: str
        """The container the challenge responses are written to"""
        prefix: str = ".well-known/acme-challenge"
        """Path of the challenge responses inside the container"""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self._cfg = cfg
        self._service: typing.Optional[BlobServiceClient] = None
        self._container = None

    async def connect(self, credential) -> None:
        """Creates the blob service client for the configured storage account."""
        self._service = BlobServiceClient(
            account_url=self._cfg.account_url, credential=credential
        )
        self._container = self._service.get_container_client(self._cfg.container)

    async def close(self) -> None:
        if self._service is not None:
            await self._service.close()

    def blob_name(self, token: str) -> str:
        prefix = self._cfg.prefix.strip("/")
        return f"{prefix}/{token}" if prefix else token

    async def publish(self, token: str, content: str) -> None:
        """Uploads the challenge response, replacing any blob of the same name.

        :param token: The challenge's token.
        :param content: The key authorization.
        :raises: :class:`~agwcert.exceptions.PublishError` If the blob could not be written.
        """
        name = self.blob_name(token)
        logger.debug("Uploading %s to container %s", name, self._cfg.container)

        try:
            await self._container.upload_blob(
                name=name,
                data=content.encode(),
                overwrite=True,
                content_settings=ContentSettings(content_type="text/plain"),
            )
        except AzureError as e:
            raise PublishError(
                f"Could not upload {name} to container {self._cfg.container}: {e}"
            ) from e

    async def cleanup(self, token: str) -> None:
        """Deletes the challenge response.

        A blob that does not exist is ignored. Other failures are logged, the blob is left behind.

        :param token: The challenge's token.
        """
        name = self.blob_name(token)
        logger.debug("Deleting %s from container %s", name, self._cfg.container)

        try:
            await self._container.delete_blob(name)
        except ResourceNotFoundError:
            logger.debug("%s was already gone", name)
        except AzureError:
            logger.exception(
                "Could not delete %s from container %s", name, self._cfg.container
            )
