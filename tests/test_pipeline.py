import pytest
from cryptography.hazmat.primitives.serialization import pkcs12

from agwcert.client import AcmeClient, DummySolver
from agwcert.exceptions import ACMEError, AuthError, InstallError
from agwcert.identity import IdentityProvider
from agwcert.installer import FileInstaller
from agwcert.models import PipelineState
from agwcert.pipeline import RenewalPipeline
from agwcert.plugins.appgw_installer import ApplicationGatewayInstaller
from agwcert.plugins.blob_solver import AzureBlobSolver
from agwcert.polling import Poller, RetryPolicy

from .fakes import (
    DOMAIN,
    EMAIL,
    PASSWORD,
    FakeAcmeClient,
    FakeClock,
    FakeIdentity,
    RecordingInstaller,
    RecordingSolver,
    names,
)

FULL_RUN = [
    PipelineState.AUTHENTICATING,
    PipelineState.REGISTERING,
    PipelineState.CHALLENGING,
    PipelineState.AWAITING_VALIDATION,
    PipelineState.FINALIZING,
    PipelineState.AWAITING_CERTIFICATE,
    PipelineState.INSTALLING,
    PipelineState.DONE,
]


def pipeline(events, tmp_path, *, statuses=("pending", "ready", "valid"), identity=None, installer=None):
    clock = FakeClock()
    return RenewalPipeline(
        domain=DOMAIN,
        email=EMAIL,
        identity=identity or FakeIdentity(events),
        client=FakeAcmeClient(events, statuses),
        solver=RecordingSolver(events),
        installer=installer or RecordingInstaller(events),
        pfx_password=PASSWORD,
        validation_poller=Poller(RetryPolicy(), sleep=clock.sleep, clock=clock),
        certificate_poller=Poller(RetryPolicy(interval=5, timeout=300), sleep=clock.sleep, clock=clock),
        scratch_dir=tmp_path,
    )


@pytest.mark.asyncio
async def test_run(events, tmp_path):
    p = pipeline(events, tmp_path)

    assert await p.run() == PipelineState.DONE

    assert p.history == FULL_RUN
    assert p.error is None

    installed = p._installer.installed
    assert len(installed) == 1
    assert installed[0].domain == DOMAIN
    assert installed[0].password == PASSWORD
    assert p._solver.credential is p._identity.credential

    # components are released in reverse order
    assert names(events)[-4:] == ["close", "installer_close", "solver_close", "identity_close"]
    # nothing is left in the scratch directory
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_throwaway_account_key(events, tmp_path):
    p = pipeline(events, tmp_path)

    assert await p.run() == PipelineState.DONE
    p._client.statuses = ["pending", "ready", "valid"]
    assert await p.run() == PipelineState.DONE

    first, second = p._client.started_with
    assert first.name == second.name == "account.key"
    assert first.parent.parent == second.parent.parent == tmp_path
    # every run registers with a key of its own
    assert first != second

    assert p._client.private_key_path is None
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_configured_account_key_is_kept(events, tmp_path):
    p = pipeline(events, tmp_path)
    p._client.private_key_path = tmp_path / "keep" / "account.key"

    await p.run()

    assert p._client.private_key_path == tmp_path / "keep" / "account.key"


@pytest.mark.asyncio
async def test_invalid_order_fails(events, tmp_path):
    p = pipeline(events, tmp_path, statuses=("pending", "invalid"))

    with pytest.raises(ACMEError):
        await p.run()

    assert p.history == FULL_RUN[:4] + [PipelineState.FAILED]
    assert p.state == PipelineState.FAILED
    assert isinstance(p.error, ACMEError)
    assert "install" not in names(events)
    assert "cleanup" in names(events)
    assert "identity_close" in names(events)


@pytest.mark.asyncio
async def test_auth_failure(events, tmp_path):
    p = pipeline(events, tmp_path, identity=FakeIdentity(events, fail=True))

    with pytest.raises(AuthError):
        await p.run()

    assert p.history == [PipelineState.AUTHENTICATING, PipelineState.FAILED]
    assert "start" not in names(events)
    assert "solver_connect" not in names(events)
    assert "identity_close" in names(events)


class FailingInstaller(RecordingInstaller):
    async def install(self, bundle):
        raise InstallError("gateway is updating")


@pytest.mark.asyncio
async def test_install_failure(events, tmp_path):
    p = pipeline(events, tmp_path, installer=FailingInstaller(events))

    with pytest.raises(InstallError):
        await p.run()

    assert p.history == FULL_RUN[:-1] + [PipelineState.FAILED]


@pytest.mark.asyncio
async def test_file_installer(events, tmp_path):
    target = tmp_path / "out"
    p = pipeline(
        events,
        tmp_path / "scratch",
        installer=FileInstaller(FileInstaller.Config(directory=target)),
    )
    (tmp_path / "scratch").mkdir()

    await p.run()

    pfx = (target / f"{DOMAIN}.pfx").read_bytes()
    key, cert, _ = pkcs12.load_key_and_certificates(pfx, PASSWORD.encode())
    assert cert is not None
    assert (target / f"{DOMAIN}.pfx").stat().st_mode & 0o777 == 0o600
    assert (target / f"{DOMAIN}.fullchain.pem").read_text().count("BEGIN CERTIFICATE") == 2


def test_from_config(tmp_path):
    cfg = RenewalPipeline.Config(
        domain=DOMAIN,
        email=EMAIL,
        pfx_password=PASSWORD,
        acme={"private_key": str(tmp_path / "account.key")},
        solver={
            "type": "azure_blob",
            "account_url": "https://example.blob.core.windows.net",
            "container": "public",
        },
        installer={
            "type": "appgw",
            "subscription_id": "00000000-0000-0000-0000-000000000000",
            "resource_group": "rg",
            "gateway": "agw",
            "certificate_name": "oldCert",
        },
    )

    p = RenewalPipeline.from_config(cfg)

    assert isinstance(p._identity, IdentityProvider)
    assert isinstance(p._client, AcmeClient)
    assert p._client.private_key_path == tmp_path / "account.key"
    assert isinstance(p._solver, AzureBlobSolver)
    assert isinstance(p._installer, ApplicationGatewayInstaller)
    assert p._certificate_poller.policy.timeout == 300


def test_from_config_dummy(tmp_path):
    cfg = RenewalPipeline.Config(
        domain=DOMAIN,
        email=EMAIL,
        pfx_password=PASSWORD,
        solver={"type": "dummy"},
        installer={"type": "file", "directory": str(tmp_path)},
    )

    p = RenewalPipeline.from_config(cfg)

    assert isinstance(p._solver, DummySolver)
    assert isinstance(p._installer, FileInstaller)
    assert p._client.private_key_path is None
