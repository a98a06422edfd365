import abc
import logging
import typing

from pydantic_settings import BaseSettings

from agwcert.models import ChallengeType
from agwcert.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


class ChallengeSolver(abc.ABC):
    """An abstract base class for challenge publishers.

    All implementations must implement the methods :meth:`publish` and :meth:`cleanup`.
    Implementations must also be registered with the plugin registry via
    :meth:`~agwcert.plugin_base.PluginRegistry.register_plugin`, so that the CLI script knows which configuration
    option corresponds to which challenge solver class.
    """

    SUPPORTED_CHALLENGES: typing.Iterable[ChallengeType]
    """The types of challenges that the challenge solver implementation supports."""

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    def __init__(self, cfg: Config):
        pass

    async def connect(self, credential) -> None:
        """Prepares the solver for use with the given Azure credential.

        :param credential: The credential returned by :meth:`~agwcert.identity.IdentityProvider.authenticate`.
        """
        pass

    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, token: str, content: str) -> None:
        """Makes *content* available at ``/.well-known/acme-challenge/{token}``.

        This method should delay returning until the server is allowed to check for completion.

        :param token: The challenge's token.
        :param content: The expected response, i.e. the key authorization.
        :raises: :class:`~agwcert.exceptions.PublishError` If the content could not be published.
        """
        pass

    @abc.abstractmethod
    async def cleanup(self, token: str) -> None:
        """Removes the content that was published for the given token.

        This method should not assume that :meth:`publish` succeeded,
        meaning it should silently return if there is nothing to clean up.

        :param token: The challenge's token.
        """
        pass


@PluginRegistry.register_plugin("dummy")
class DummySolver(ChallengeSolver):
    """Dummy challenge solver that does not actually publish anything."""

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.HTTP_01])
    """The types of challenges that the solver supports."""

    class Config(ChallengeSolver.Config):
        type: typing.Literal["dummy"] = "dummy"

    async def publish(self, token: str, content: str) -> None:
        """Only logs the mock publication attempt."""
        logger.debug("(not) publishing challenge response for token %s", token)

    async def cleanup(self, token: str) -> None:
        """Only logs the mock cleanup attempt."""
        logger.debug("(not) cleaning up after token %s", token)
