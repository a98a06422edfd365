import logging
import ssl
import typing
from dataclasses import dataclass
from pathlib import Path

import acme.messages
import josepy
from acme import jws
from aiohttp import ClientSession, ClientResponseError
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from pydantic_settings import BaseSettings

import agwcert.util
from agwcert.models import messages
from agwcert.version import __version__

logger = logging.getLogger(__name__)

LETSENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"


@dataclass
class ExternalAccountBindingCredentials:
    """Stores external account binding credentials to later create a binding JWS using
    :class:`~acme.messages.ExternalAccountBinding`.
    """

    kid: str
    """The external account binding's key identifier"""
    hmac_key: str
    """The external account binding's symmetric encryption key"""

    def create_eab(self, public_key: josepy.jwk.JWK, directory: dict) -> dict:
        """Creates an external account binding from the stored credentials.

        :param public_key: The account's public key
        :param directory: The ACME server's directory
        :return: The JWS representing the external account binding
        """
        if self.kid and self.hmac_key:
            return acme.messages.ExternalAccountBinding.from_data(
                public_key, self.kid, self.hmac_key, directory
            )
        else:
            raise ValueError("Must specify both kid and hmac_key")


class AcmeClient:
    """ACME compliant client.

    The client only implements the requests themselves. Driving an order to completion is
    the job of the :class:`~agwcert.orchestrator.AcmeOrchestrator`.
    """

    INVALID_NONCE_RETRIES = 5
    """The number of times the client should retry when the server returns the error *badNonce*."""

    class Config(BaseSettings, extra="forbid"):
        directory: str = LETSENCRYPT_DIRECTORY
        """The ACME server's directory URL"""
        private_key: typing.Optional[Path] = None
        """Path of the account key, created if it does not exist. A throwaway key is used if unset."""
        key_type: typing.Literal["rsa", "ec"] = "rsa"
        """The type of account key to create"""
        server_cert: typing.Optional[Path] = None
        """Additional CA certificate to trust, e.g. for a test CA"""
        eab_kid: typing.Optional[str] = None
        """The external account binding's key identifier"""
        eab_hmac_key: typing.Optional[str] = None
        """The external account binding's symmetric encryption key"""

    def __init__(self, cfg: Config, *, private_key: Path = None):
        """Creates an :class:`AcmeClient` instance.

        :param cfg: The client's configuration.
        :param private_key: Path of the account key, takes precedence over the configured one.
        """
        self._ssl_context = ssl.create_default_context()

        if cfg.server_cert:
            self._ssl_context.load_verify_locations(cafile=str(cfg.server_cert))

        self._session: typing.Optional[ClientSession] = None
        self._directory_url = cfg.directory
        private_key = private_key or cfg.private_key
        self.private_key_path: typing.Optional[Path] = Path(private_key) if private_key else None
        """Path of the account key. Must be set before :meth:`start` is called."""
        self._key_type = cfg.key_type
        self._private_key = None
        self._alg = None

        self._directory = dict()
        self._nonces = set()
        self._account: typing.Optional[messages.Account] = None

        self.eab_credentials = ExternalAccountBindingCredentials(
            cfg.eab_kid, cfg.eab_hmac_key
        )

    @staticmethod
    def _open_key(data: bytes):
        keys = agwcert.util.pem_split(data.decode())
        if len(keys) != 1:
            raise ValueError("Bad private key")
        if isinstance(keys[0], rsa.RSAPrivateKey):
            key = josepy.jwk.JWKRSA.load(data)
            alg = josepy.jwa.RS256
        elif isinstance(keys[0], ec.EllipticCurvePrivateKey):
            key = josepy.jwk.JWKEC.load(data)
            alg = {
                521: josepy.jwa.ES512,
                256: josepy.jwa.ES256,
                384: josepy.jwa.ES384,
            }[keys[0].curve.key_size]
        else:
            raise ValueError("Bad private key")
        return key, alg

    @property
    def account(self) -> typing.Optional[messages.Account]:
        return self._account

    async def close(self):
        """Closes the client's session.

        The client may not be used for requests anymore after it has been closed.
        """
        if self._session:
            await self._session.close()

    async def start(self):
        """Starts the client's session.

        Fetches the ACME directory and a first nonce, then makes sure the account key exists.
        The key is generated if there is none at the configured path yet.

        :raises: :class:`ValueError` If :attr:`private_key_path` is not set.
        """
        if self.private_key_path is None:
            raise ValueError("The path of the account key is required")

        self._session = ClientSession(
            headers={"User-Agent": f"agwcert Client {__version__}"}
        )

        async with self._session.get(
            self._directory_url, ssl=self._ssl_context
        ) as resp:
            resp.raise_for_status()
            self._directory = await resp.json()
        logger.info("Fetched directory %s", self._directory_url)

        self._nonces.add(await self._fetch_nonce())

        self._private_key, self._alg = self._open_key(
            agwcert.util.load_or_create_key(self.private_key_path, self._key_type)
        )

    async def account_register(self, email: str = None) -> messages.Account:
        """Registers an account with the CA.

        Also sends the given contact information and stores the account internally
        for subsequent requests.
        If the private key is already registered, then the account is only queried.

        :param email: The contact email
        :raises: :class:`acme.messages.Error` If the server rejects any of the contact information, the private
            key, or the external account binding.
        :return: The account.
        """
        try:
            external_account_binding = self.eab_credentials.create_eab(
                self._private_key.public_key(), self._directory
            )
        except ValueError:
            external_account_binding = None
            if self.eab_credentials.kid or self.eab_credentials.hmac_key:
                logger.warning(
                    "The external account binding credentials are invalid, "
                    "i.e. the kid or the hmac_key was not supplied. Trying without EAB."
                )

        reg = acme.messages.Registration.from_data(
            email=email,
            terms_of_service_agreed=True,
            external_account_binding=external_account_binding,
        )

        self._account = None  # Otherwise the kid is sent instead of the JWK.
        resp, account_obj = await self._signed_request(
            reg, self._directory["newAccount"]
        )
        account_obj["kid"] = resp.headers["Location"]
        self._account = messages.Account.from_json(account_obj)
        logger.info(
            "ACME account %s, kid %s",
            "registered" if resp.status == 201 else "already exists",
            self._account.kid,
        )
        return self._account

    async def order_create(
        self, identifiers: typing.Union[typing.List[dict], typing.List[str]]
    ) -> messages.Order:
        """Creates a new order with the given identifiers.

        :param identifiers: :class:`list` of identifiers that the order should contain. May either be a list of
            fully qualified domain names or a list of :class:`dict` containing the *type* and *name* (both
            :class:`str`) of each identifier.
        :raises: :class:`acme.messages.Error` If the server is unwilling to create an order with the requested
            identifiers.
        :returns: The new order.
        """
        order = messages.NewOrder.from_data(identifiers=identifiers)

        resp, order_obj = await self._signed_request(order, self._directory["newOrder"])
        order_obj["url"] = resp.headers["Location"]
        return messages.Order.from_json(order_obj)

    async def order_finalize(
        self, order: messages.Order, csr: "cryptography.x509.CertificateSigningRequest"
    ) -> messages.Order:
        """Submits the CSR to the order's *finalize* URL.

        The order usually is in state *processing* afterwards, it has to be polled using :meth:`order_get`
        until the certificate URL becomes available.

        :param order: Order that is to be finalized.
        :param csr: The CSR that is submitted to apply for certificate issuance.
        :raises:

            * :class:`acme.messages.Error` If the server is unwilling to finalize the order.
            * :class:`aiohttp.ClientResponseError` If the order does not exist.

        :returns: The order as returned by the server.
        """
        cert_req = messages.CertificateRequest(csr=csr)

        resp, order_obj = await self._signed_request(cert_req, order.finalize)
        order_obj["url"] = resp.headers.get("Location", order.url)
        return messages.Order.from_json(order_obj)

    async def order_get(self, order_url: str) -> messages.Order:
        """Fetches an order given its URL.

        :param order_url: The order's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the order does not exist.
        :return: The fetched order.
        """
        resp, order = await self._signed_request(None, order_url)
        order["url"] = order_url
        return messages.Order.from_json(order)

    async def authorization_get(
        self, authorization_url: str
    ) -> acme.messages.Authorization:
        """Fetches an authorization given its URL.

        :param authorization_url: The authorization's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the authorization does not exist.
        :return: The fetched authorization.
        """
        resp, authorization = await self._signed_request(None, authorization_url)
        return acme.messages.Authorization.from_json(authorization)

    async def challenge_validate(self, challenge_url: str) -> None:
        """Initiates the given challenge's validation.

        :param challenge_url: The challenge's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the challenge does not exist.
        """
        await self._signed_request(None, challenge_url, post_as_get=False)

    def challenge_response(
        self, challenge: acme.messages.ChallengeBody
    ) -> typing.Tuple[str, str]:
        """Computes what has to be served in order to complete the given HTTP-01 challenge.

        :param challenge: The challenge.
        :return: The challenge's token and the key authorization that has to be served for it.
        """
        chall = challenge.chall
        return chall.encode("token"), chall.validation(self._private_key)

    async def certificate_get(self, order: acme.messages.Order) -> str:
        """Downloads the given order's certificate.

        :param order: The order whose certificate to download.
        :raises:

            * :class:`aiohttp.ClientResponseError` If the certificate does not exist.
            * :class:`ValueError` If the order has not been finalized yet, i.e. the certificate \
                property is *None*.

        :return: The order's certificate chain encoded as PEM.
        """
        if not order.certificate:
            raise ValueError("This order has not been finalized")

        _, pem = await self._signed_request(None, order.certificate)

        return pem

    async def _fetch_nonce(self) -> str:
        async with self._session.head(
            self._directory["newNonce"], ssl=self._ssl_context
        ) as resp:
            resp.raise_for_status()
            logger.debug("Storing new nonce %s", resp.headers["Replay-Nonce"])
            return resp.headers["Replay-Nonce"]

    async def _get_nonce(self):
        try:
            return self._nonces.pop()
        except KeyError:
            return await self._fetch_nonce()

    def _wrap_in_jws(
        self, obj: typing.Optional[josepy.JSONDeSerializable], nonce, url, post_as_get
    ):
        if post_as_get:
            jobj = obj.json_dumps(indent=2).encode() if obj else b""
        else:
            jobj = b"{}"
        kwargs = {"nonce": josepy.b64.b64decode(nonce), "url": url}
        if self._account is not None:
            kwargs["kid"] = self._account.kid
        return jws.JWS.sign(
            jobj, key=self._private_key, alg=self._alg, **kwargs
        ).json_dumps(indent=2)

    async def _signed_request(
        self, obj: typing.Optional[josepy.JSONDeSerializable], url, post_as_get=True
    ):
        tries = self.INVALID_NONCE_RETRIES
        while True:
            try:
                payload = self._wrap_in_jws(
                    obj, await self._get_nonce(), url, post_as_get
                )
                return await self._make_request(payload, url)
            except acme.messages.Error as e:
                if e.code == "badNonce" and tries > 1:
                    logger.debug("Server rejected the nonce, retrying")
                    tries -= 1
                    continue
                raise e

    async def _make_request(self, payload, url):
        async with self._session.post(
            url,
            data=payload,
            headers={"Content-Type": "application/jose+json"},
            ssl=self._ssl_context,
        ) as resp:
            if "Replay-Nonce" in resp.headers:
                self._nonces.add(resp.headers["Replay-Nonce"])

            if 200 <= resp.status < 300 and resp.content_type == "application/json":
                data = await resp.json()
            elif resp.content_type == "application/problem+json":
                problem = await resp.json()
                problem.setdefault("status", resp.status)
                raise messages.Problem.from_json(problem)
            elif resp.status < 200 or resp.status >= 300:
                raise ClientResponseError(
                    resp.request_info, resp.history, status=resp.status
                )
            else:
                data = await resp.text()

            logger.debug(data)
            return resp, data
