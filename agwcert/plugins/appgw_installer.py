import base64
import logging
import typing

from azure.core.exceptions import AzureError
from azure.mgmt.network.aio import NetworkManagementClient
from azure.mgmt.network.models import ApplicationGatewaySslCertificate

from agwcert.exceptions import InstallError
from agwcert.installer import CertificateInstaller
from agwcert.models import CertificateBundle
from agwcert.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)

"""This module contains a certificate installer that replaces an SSL certificate of an Azure Application
Gateway.
"""


@PluginRegistry.register_plugin("appgw")
class ApplicationGatewayInstaller(CertificateInstaller):
    """Azure Application Gateway certificate installer.

    The gateway's configuration can only be written as a whole, so the installer reads it, swaps the
    PFX of the configured SSL certificate slot and writes the full configuration back.
    Listeners reference the slot by name and pick up the new certificate without further changes.
    """

    class Config(CertificateInstaller.Config):
        type: typing.Literal["appgw"] = "appgw"
        """The type of installer"""
        subscription_id: str
        """The subscription that contains the gateway"""
        resource_group: str
        """The gateway's resource group"""
        gateway: str
        """The gateway's name"""
        certificate_name: str
        """The name of the SSL certificate slot to replace"""
        create_missing: bool = False
        """add the slot if the gateway does not have it yet"""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self._cfg = cfg
        self._client: typing.Optional[NetworkManagementClient] = None

    async def connect(self, credential) -> None:
        self._client = NetworkManagementClient(credential, self._cfg.subscription_id)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    def _replace_slot(self, gateway, bundle: CertificateBundle) -> None:
        data = base64.b64encode(bundle.pfx).decode()

        certificates = gateway.ssl_certificates if gateway.ssl_certificates is not None else []
        for certificate in certificates:
            if certificate.name == self._cfg.certificate_name:
                certificate.data = data
                certificate.password = bundle.password
                certificate.key_vault_secret_id = None
                return

        if not self._cfg.create_missing:
            raise InstallError(
                f"Gateway {self._cfg.gateway} has no SSL certificate named {self._cfg.certificate_name}"
            )

        logger.info("Adding SSL certificate %s to gateway %s", self._cfg.certificate_name, self._cfg.gateway)
        certificates.append(
            ApplicationGatewaySslCertificate(
                name=self._cfg.certificate_name, data=data, password=bundle.password
            )
        )
        gateway.ssl_certificates = certificates

    async def install(self, bundle: CertificateBundle) -> None:
        """Replaces the configured SSL certificate slot with *bundle* and applies the configuration.

        :param bundle: The certificate and its private key.
        :raises: :class:`~agwcert.exceptions.InstallError` If the gateway could not be read or updated, or
            it has no slot of the configured name.
        """
        cfg = self._cfg

        try:
            gateway = await self._client.application_gateways.get(cfg.resource_group, cfg.gateway)
        except AzureError as e:
            raise InstallError(f"Could not read gateway {cfg.gateway}: {e}") from e

        self._replace_slot(gateway, bundle)

        logger.info(
            "Updating SSL certificate %s of gateway %s with the certificate for %s",
            cfg.certificate_name,
            cfg.gateway,
            bundle.domain,
        )
        try:
            poller = await self._client.application_gateways.begin_create_or_update(
                cfg.resource_group, cfg.gateway, gateway
            )
            result = await poller.result()
        except AzureError as e:
            raise InstallError(f"Could not update gateway {cfg.gateway}: {e}") from e

        logger.info(
            "Gateway %s updated, provisioning state %s",
            cfg.gateway,
            getattr(result, "provisioning_state", None),
        )
