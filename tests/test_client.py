import json
import logging
import os

import acme.messages
import josepy
import pytest
import pytest_asyncio
from aiohttp import web
from cryptography import x509

import agwcert.util
from agwcert.client import AcmeClient
from agwcert.models.messages import decode_csr
from agwcert.polling import Poller, RetryPolicy, is_transient

from .fakes import WIRE_TOKEN, FakeClock, TestCA

log = logging.getLogger(__name__)


class Problem(web.HTTPBadRequest):
    def __init__(self, code, detail, nonce):
        super().__init__(
            text=json.dumps({"type": f"urn:ietf:params:acme:error:{code}", "detail": detail}),
            content_type="application/problem+json",
            headers={"Replay-Nonce": nonce},
        )


class AcmeStubService:
    """Minimal ACME server that serves one account, one order and one authorization."""

    def __init__(self, port):
        self.port = port
        self.base = f"http://localhost:{port}"
        self.app = web.Application()
        self.app.add_routes(
            [
                web.get("/directory", self.handle_directory),
                web.head("/new-nonce", self.handle_nonce),
                web.post("/new-account", self.handle_new_account),
                web.post("/new-order", self.handle_new_order),
                web.post("/order/1", self.handle_order),
                web.post("/order/1/finalize", self.handle_finalize),
                web.post("/authz/1", self.handle_authorization),
                web.post("/chall/1", self.handle_challenge),
                web.post("/cert/1", self.handle_certificate),
            ]
        )
        self.ca = TestCA()
        self.requests = []
        self.issued_nonces = set()
        self.reject_nonces = 0
        self.existing_account = False
        self.unavailable = 0
        self.csr = None

    def _nonce(self):
        nonce = josepy.b64.b64encode(os.urandom(16)).decode()
        self.issued_nonces.add(nonce)
        return nonce

    async def _verify(self, request):
        """Checks nonce and url of a JWS request and returns its protected header and payload."""
        body = await request.json()
        protected = json.loads(josepy.b64.b64decode(body["protected"]))
        payload = josepy.b64.b64decode(body["payload"]) if body["payload"] else b""
        self.requests.append((request.path, protected))

        assert request.content_type == "application/jose+json"
        assert protected["url"] == f"{self.base}{request.path}"

        if self.reject_nonces:
            self.reject_nonces -= 1
            raise Problem("badNonce", "JWS has an invalid anti-replay nonce", self._nonce())
        if protected["nonce"] not in self.issued_nonces:
            raise Problem("badNonce", "Unknown nonce", self._nonce())
        self.issued_nonces.remove(protected["nonce"])

        return protected, json.loads(payload) if payload else None

    def _json(self, data, status=200, **headers):
        headers["Replay-Nonce"] = self._nonce()
        return web.json_response(data, status=status, headers=headers)

    def _order(self, status):
        order = {
            "status": status,
            "identifiers": [{"type": "dns", "value": "example.com"}],
            "authorizations": [f"{self.base}/authz/1"],
            "finalize": f"{self.base}/order/1/finalize",
        }
        if status == "valid":
            order["certificate"] = f"{self.base}/cert/1"
        return order

    async def handle_directory(self, request):
        return web.json_response(
            {
                "newNonce": f"{self.base}/new-nonce",
                "newAccount": f"{self.base}/new-account",
                "newOrder": f"{self.base}/new-order",
            }
        )

    async def handle_nonce(self, request):
        return web.Response(headers={"Replay-Nonce": self._nonce()})

    async def handle_new_account(self, request):
        protected, payload = await self._verify(request)
        assert "jwk" in protected and "kid" not in protected
        assert payload["termsOfServiceAgreed"] is True

        return self._json(
            {"status": "valid", "contact": payload["contact"]},
            status=200 if self.existing_account else 201,
            Location=f"{self.base}/acct/1",
        )

    async def handle_new_order(self, request):
        protected, payload = await self._verify(request)
        assert protected["kid"] == f"{self.base}/acct/1"

        if payload["identifiers"][0]["value"].endswith(".invalid"):
            raise Problem("rejectedIdentifier", "Invalid identifier", self._nonce())

        return self._json(self._order("pending"), status=201, Location=f"{self.base}/order/1")

    async def handle_order(self, request):
        await self._verify(request)
        if self.unavailable:
            self.unavailable -= 1
            return web.json_response(
                {"type": "urn:ietf:params:acme:error:serverInternal", "detail": "Service unavailable"},
                status=503,
                content_type="application/problem+json",
                headers={"Replay-Nonce": self._nonce()},
            )
        return self._json(self._order("valid" if self.csr else "ready"))

    async def handle_finalize(self, request):
        _, payload = await self._verify(request)
        self.csr = decode_csr(payload["csr"])
        return self._json(self._order("processing"), Location=f"{self.base}/order/1")

    async def handle_authorization(self, request):
        await self._verify(request)
        return self._json(
            {
                "identifier": {"type": "dns", "value": "example.com"},
                "status": "pending",
                "challenges": [
                    {
                        "type": "http-01",
                        "url": f"{self.base}/chall/1",
                        "status": "pending",
                        "token": WIRE_TOKEN,
                    }
                ],
            }
        )

    async def handle_challenge(self, request):
        await self._verify(request)
        return self._json(
            {
                "type": "http-01",
                "url": f"{self.base}/chall/1",
                "status": "processing",
                "token": WIRE_TOKEN,
            }
        )

    async def handle_certificate(self, request):
        await self._verify(request)
        return web.Response(
            text=self.ca.issue(self.csr),
            content_type="application/pem-certificate-chain",
            headers={"Replay-Nonce": self._nonce()},
        )

    async def run(self):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", self.port)
        await site.start()
        self.site = site

    async def stop(self):
        await self.site.stop()
        await self.runner.cleanup()


@pytest_asyncio.fixture
async def stub(unused_tcp_port):
    s = AcmeStubService(unused_tcp_port)
    await s.run()
    log.info(f"ACME stub at {s.base}")
    yield s
    await s.stop()


@pytest_asyncio.fixture
async def client(stub, tmp_path):
    c = AcmeClient(
        AcmeClient.Config(directory=f"{stub.base}/directory", private_key=tmp_path / "account.key")
    )
    await c.start()
    yield c
    await c.close()


@pytest.mark.asyncio
async def test_start_creates_key(client, tmp_path):
    assert (tmp_path / "account.key").exists()
    assert client.account is None


@pytest.mark.asyncio
async def test_start_requires_key_path(stub):
    c = AcmeClient(AcmeClient.Config(directory=f"{stub.base}/directory"))

    with pytest.raises(ValueError):
        await c.start()


@pytest.mark.asyncio
async def test_start_ec_key(stub, tmp_path):
    c = AcmeClient(
        AcmeClient.Config(directory=f"{stub.base}/directory", private_key=tmp_path / "ec.key", key_type="ec")
    )
    await c.start()
    try:
        account = await c.account_register("admin@example.com")
    finally:
        await c.close()

    assert account.kid == f"{stub.base}/acct/1"
    assert stub.requests[-1][1]["alg"] == "ES256"


@pytest.mark.asyncio
async def test_account_register(client, stub):
    account = await client.account_register("admin@example.com")

    assert account.kid == f"{stub.base}/acct/1"
    assert list(account.contact) == ["mailto:admin@example.com"]
    assert client.account is account


@pytest.mark.asyncio
async def test_account_register_existing(client, stub, caplog):
    stub.existing_account = True
    caplog.set_level(logging.INFO, logger="agwcert")

    await client.account_register("admin@example.com")
    # registering again sends the key, not the kid
    await client.account_register("admin@example.com")

    assert "already exists" in caplog.text


@pytest.mark.asyncio
async def test_bad_nonce_is_retried(client, stub):
    stub.reject_nonces = 2

    account = await client.account_register("admin@example.com")

    assert account.kid == f"{stub.base}/acct/1"
    assert [path for path, _ in stub.requests] == ["/new-account"] * 3


@pytest.mark.asyncio
async def test_bad_nonce_retries_exhausted(client, stub):
    stub.reject_nonces = AcmeClient.INVALID_NONCE_RETRIES

    with pytest.raises(acme.messages.Error) as excinfo:
        await client.account_register("admin@example.com")

    assert excinfo.value.code == "badNonce"


@pytest.mark.asyncio
async def test_order_rejected(client, stub):
    await client.account_register("admin@example.com")

    with pytest.raises(acme.messages.Error) as excinfo:
        await client.order_create(["example.invalid"])

    assert excinfo.value.code == "rejectedIdentifier"


@pytest.mark.asyncio
async def test_order_flow(client, stub, tmp_path):
    await client.account_register("admin@example.com")

    order = await client.order_create(["example.com"])
    assert order.url == f"{stub.base}/order/1"
    assert order.status == acme.messages.STATUS_PENDING

    authorization = await client.authorization_get(order.authorizations[0])
    (challenge,) = authorization.challenges
    token, content = client.challenge_response(challenge)
    assert token == WIRE_TOKEN
    thumbprint = josepy.b64.b64encode(client._private_key.thumbprint()).decode()
    assert content == f"{WIRE_TOKEN}.{thumbprint}"

    await client.challenge_validate(challenge.uri)

    order = await client.order_get(order.url)
    assert order.status == acme.messages.STATUS_READY

    key = agwcert.util.generate_rsa_key(tmp_path / "certificate.key")
    csr = agwcert.util.generate_csr("example.com", key, tmp_path / "certificate.csr", ["example.com"])
    order = await client.order_finalize(order, csr)
    assert order.status == acme.messages.STATUS_PROCESSING
    assert order.url == f"{stub.base}/order/1"
    assert stub.csr.subject == csr.subject

    order = await client.order_get(order.url)
    assert order.certificate == f"{stub.base}/cert/1"

    pem = await client.certificate_get(order)
    certificates = [obj for obj in agwcert.util.pem_split(pem) if isinstance(obj, x509.Certificate)]
    assert len(certificates) == 2
    assert certificates[0].subject == csr.subject

    # every request but the first one is signed with the account's kid
    assert all("kid" in protected for _, protected in stub.requests[1:])


@pytest.mark.asyncio
async def test_certificate_get_unfinalized(client, stub):
    await client.account_register("admin@example.com")
    order = await client.order_create(["example.com"])

    with pytest.raises(ValueError):
        await client.certificate_get(order)


@pytest.mark.asyncio
async def test_order_get_unavailable(client, stub):
    await client.account_register("admin@example.com")
    order = await client.order_create(["example.com"])
    stub.unavailable = 1

    with pytest.raises(acme.messages.Error) as excinfo:
        await client.order_get(order.url)

    assert excinfo.value.status == 503
    assert excinfo.value.code == "serverInternal"
    assert is_transient(excinfo.value)


@pytest.mark.asyncio
async def test_order_polled_through_outage(client, stub):
    await client.account_register("admin@example.com")
    order = await client.order_create(["example.com"])
    stub.unavailable = 2
    clock = FakeClock()

    order = await Poller(RetryPolicy(interval=1), sleep=clock.sleep, clock=clock).poll_until(
        client.order_get, order.url, predicate=lambda o: o.status == acme.messages.STATUS_READY
    )

    assert order.status == acme.messages.STATUS_READY
    assert clock.sleeps == [1, 1]
