import abc
import logging
import typing
from pathlib import Path

from pydantic_settings import BaseSettings

import agwcert.util
from agwcert.models import CertificateBundle
from agwcert.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


class CertificateInstaller(abc.ABC):
    """An abstract base class for certificate installers.

    Implementations must implement :meth:`install` and be registered with the plugin registry via
    :meth:`~agwcert.plugin_base.PluginRegistry.register_plugin`.
    """

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    def __init__(self, cfg: Config):
        pass

    async def connect(self, credential) -> None:
        """Prepares the installer for use with the given Azure credential."""
        pass

    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def install(self, bundle: CertificateBundle) -> None:
        """Installs the certificate bundle on the target.

        :param bundle: The certificate and its private key.
        :raises: :class:`~agwcert.exceptions.InstallError` If the target rejected the certificate.
        """
        pass


@PluginRegistry.register_plugin("file")
class FileInstaller(CertificateInstaller):
    """Installer that copies the PFX and the PEM chain to a directory instead of a gateway."""

    class Config(CertificateInstaller.Config):
        type: typing.Literal["file"] = "file"
        directory: Path
        """The directory the files are written to"""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self._directory = Path(cfg.directory)

    async def install(self, bundle: CertificateBundle) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)

        agwcert.util.write_private(self._directory / f"{bundle.domain}.pfx", bundle.pfx)
        (self._directory / f"{bundle.domain}.fullchain.pem").write_text(bundle.fullchain)

        logger.info("Wrote certificate for %s to %s", bundle.domain, self._directory)
