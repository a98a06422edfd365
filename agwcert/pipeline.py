import asyncio
import contextlib
import logging
import tempfile
import time
import typing
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

from agwcert.client import AcmeClient, ChallengeSolver, DummySolver
from agwcert.exceptions import ACMEError
from agwcert.identity import IdentityProvider
from agwcert.installer import CertificateInstaller, FileInstaller
from agwcert.models import PipelineState
from agwcert.orchestrator import AcmeOrchestrator
from agwcert.plugin_base import PluginRegistry
from agwcert.plugins.appgw_installer import ApplicationGatewayInstaller
from agwcert.plugins.blob_solver import AzureBlobSolver
from agwcert.polling import Poller, RetryPolicy

logger = logging.getLogger(__name__)

challenge_solver_registry = PluginRegistry.get_registry(ChallengeSolver)
installer_registry = PluginRegistry.get_registry(CertificateInstaller)


class PollingConfig(BaseSettings, extra="forbid"):
    validation: RetryPolicy = Field(default_factory=RetryPolicy)
    """waiting for the order to leave pending/processing after the challenge was published"""
    certificate: RetryPolicy = Field(default_factory=lambda: RetryPolicy(interval=5.0, timeout=300.0))
    """waiting for the certificate URL after finalization"""


class RenewalPipeline:
    """Renews the certificate of one domain and installs it.

    The run goes through the states of :class:`~agwcert.models.PipelineState` in order. Any error moves it to
    :attr:`~agwcert.models.PipelineState.FAILED` and is re-raised; nothing is retried, except for the polling
    done by the orchestrator.
    """

    class Config(BaseSettings, extra="forbid"):
        domain: str
        """the domain to renew the certificate for"""
        email: str
        """contact address of the ACME account"""
        pfx_password: str = Field(min_length=1)
        """password of the PFX that is uploaded to the gateway"""
        certificate_key_type: typing.Literal["rsa", "ec"] = "rsa"
        """type of the certificate's private key"""
        scratch_dir: typing.Optional[Path] = None
        """parent of the per-run scratch directory, the system default if unset"""
        identity: IdentityProvider.Config = Field(default_factory=IdentityProvider.Config)
        acme: AcmeClient.Config = Field(default_factory=AcmeClient.Config)
        polling: PollingConfig = Field(default_factory=PollingConfig)
        solver: DummySolver.Config | AzureBlobSolver.Config = Field(discriminator="type")
        installer: FileInstaller.Config | ApplicationGatewayInstaller.Config = Field(discriminator="type")

    def __init__(
        self,
        *,
        domain: str,
        email: str,
        identity: IdentityProvider,
        client: AcmeClient,
        solver: ChallengeSolver,
        installer: CertificateInstaller,
        pfx_password: str,
        key_type: str = "rsa",
        validation_poller: Poller = None,
        certificate_poller: Poller = None,
        scratch_dir: Path = None,
    ):
        self.domain = domain
        self.email = email
        self._identity = identity
        self._client = client
        self._solver = solver
        self._installer = installer
        self._pfx_password = pfx_password
        self._key_type = key_type
        self._validation_poller = validation_poller
        self._certificate_poller = certificate_poller
        self._scratch_dir = scratch_dir

        self.state: typing.Optional[PipelineState] = None
        self.history: typing.List[PipelineState] = []
        self.error: typing.Optional[Exception] = None

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        *,
        sleep: typing.Callable[[float], typing.Awaitable] = asyncio.sleep,
        clock: typing.Callable[[], float] = time.monotonic,
    ) -> "RenewalPipeline":
        """Creates the pipeline and its components as described by the configuration."""
        solver_cls = challenge_solver_registry.get_plugin(cfg.solver.type)
        installer_cls = installer_registry.get_plugin(cfg.installer.type)

        return cls(
            domain=cfg.domain,
            email=cfg.email,
            identity=IdentityProvider(cfg.identity),
            client=AcmeClient(cfg.acme),
            solver=solver_cls(cfg.solver),
            installer=installer_cls(cfg.installer),
            pfx_password=cfg.pfx_password,
            key_type=cfg.certificate_key_type,
            validation_poller=Poller(cfg.polling.validation, sleep=sleep, clock=clock),
            certificate_poller=Poller(cfg.polling.certificate, sleep=sleep, clock=clock),
            scratch_dir=cfg.scratch_dir,
        )

    def _transition(self, state: PipelineState) -> None:
        logger.info(
            "%s: %s -> %s",
            self.domain,
            self.state.value if self.state else "-",
            state.value,
        )
        self.state = state
        self.history.append(state)

    async def run(self) -> PipelineState:
        """Runs the renewal once.

        :raises: The error of the failing stage, see :mod:`agwcert.exceptions`.
        :return: :attr:`~agwcert.models.PipelineState.DONE`
        """
        try:
            async with contextlib.AsyncExitStack() as stack:
                await self._run(stack)
        except Exception as e:
            failed_in = self.state
            self.error = e
            self._transition(PipelineState.FAILED)
            logger.exception(
                "Renewal of %s failed in state %s",
                self.domain,
                failed_in.value if failed_in else "-",
            )
            raise

        self._transition(PipelineState.DONE)
        return self.state

    async def _run(self, stack: contextlib.AsyncExitStack) -> None:
        workdir = Path(
            stack.enter_context(
                tempfile.TemporaryDirectory(prefix="agwcert-", dir=self._scratch_dir)
            )
        )

        self._transition(PipelineState.AUTHENTICATING)
        stack.push_async_callback(self._identity.close)
        credential = await self._identity.authenticate()

        for component in (self._solver, self._installer):
            stack.push_async_callback(component.close)
            await component.connect(credential)

        stack.push_async_callback(self._client.close)
        if self._client.private_key_path is None:
            logger.warning("No account key configured, registering a throwaway account")
            self._client.private_key_path = workdir / "account.key"
            stack.callback(setattr, self._client, "private_key_path", None)

        orchestrator = AcmeOrchestrator(
            self._client,
            self._solver,
            workdir=workdir,
            pfx_password=self._pfx_password,
            key_type=self._key_type,
            validation_poller=self._validation_poller,
            certificate_poller=self._certificate_poller,
        )
        order, bundle = await orchestrator.obtain_certificate(
            self.domain, self.email, on_state=self._transition
        )

        if not order.certificate:
            raise ACMEError(f"Order {order.url} has no certificate URL")

        self._transition(PipelineState.INSTALLING)
        await self._installer.install(bundle)
