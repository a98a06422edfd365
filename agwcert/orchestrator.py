import asyncio
import contextlib
import logging
import typing
from pathlib import Path

import acme.messages
import aiohttp

import agwcert.util
from agwcert.client import AcmeClient, ChallengeSolver
from agwcert.exceptions import ACMEError
from agwcert.models import (
    CertificateBundle,
    ChallengeType,
    OrderStatus,
    PipelineState,
)
from agwcert.models import messages
from agwcert.polling import Poller, RetryPolicy

logger = logging.getLogger(__name__)


def order_status(order: acme.messages.Order) -> OrderStatus:
    return OrderStatus(order.status.name)


def is_invalid(order: acme.messages.Order) -> bool:
    return order_status(order) == OrderStatus.INVALID


def has_left_validation(order: acme.messages.Order) -> bool:
    return not order_status(order).awaits_validation


def has_certificate(order: acme.messages.Order) -> bool:
    return bool(order.certificate)


@contextlib.contextmanager
def acme_errors(action: str):
    """Converts errors raised while talking to the ACME server into :class:`ACMEError`."""
    try:
        yield
    except ACMEError:
        raise
    except acme.messages.Error as e:
        raise ACMEError(f"Could not {action}", problem=e) from e
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise ACMEError(f"Could not {action}: {e!r}") from e


class AcmeOrchestrator:
    """Drives an ACME order for a single domain from account registration to the exported certificate.

    The actual requests are made by the injected :class:`~agwcert.client.AcmeClient`, the HTTP-01 challenge
    responses are published by the injected :class:`~agwcert.client.ChallengeSolver`.
    Intermediate key material is written to *workdir*.
    """

    def __init__(
        self,
        client: AcmeClient,
        solver: ChallengeSolver,
        *,
        workdir: Path,
        pfx_password: str,
        key_type: str = "rsa",
        validation_poller: Poller = None,
        certificate_poller: Poller = None,
    ):
        self._client = client
        self._solver = solver
        self._workdir = Path(workdir)
        self._pfx_password = pfx_password
        self._key_type = key_type
        self._validation = validation_poller or Poller(RetryPolicy())
        self._certificate = certificate_poller or Poller(RetryPolicy())

        self.problems: typing.List[acme.messages.Error] = []
        """The errors reported for the authorizations of an order that became invalid."""

    async def obtain_certificate(
        self,
        domain: str,
        email: str,
        on_state: typing.Callable[[PipelineState], None] = None,
    ) -> typing.Tuple[messages.Order, CertificateBundle]:
        """Obtains a certificate for *domain*.

        :param domain: The domain to request the certificate for.
        :param email: The contact address used for the ACME account.
        :param on_state: Called with the state that each step enters.
        :raises:

            * :class:`~agwcert.exceptions.ACMEError` If the server rejected a request or the order became invalid.
            * :class:`~agwcert.exceptions.PublishError` If a challenge response could not be published.

        :return: The valid order and the exported certificate bundle.
        """
        notify = on_state or (lambda state: None)

        notify(PipelineState.REGISTERING)
        await self.account_register(email)

        notify(PipelineState.CHALLENGING)
        with acme_errors("create the order"):
            order = await self._client.order_create([domain])
        logger.info("Created order %s for %s", order.url, domain)

        published: typing.List[str] = []
        try:
            await self.challenges_publish(order, published)

            notify(PipelineState.AWAITING_VALIDATION)
            order = await self.order_await_validation(order)
        finally:
            await self.challenges_cleanup(published)

        notify(PipelineState.FINALIZING)
        order, private_key = await self.order_finalize(order, domain)

        notify(PipelineState.AWAITING_CERTIFICATE)
        order = await self.order_await_certificate(order)

        bundle = await self.certificate_export(order, private_key, domain)
        return order, bundle

    async def account_register(self, email: str) -> messages.Account:
        with acme_errors("register the account"):
            await self._client.start()
            return await self._client.account_register(email)

    async def challenges_publish(
        self, order: messages.Order, published: typing.List[str]
    ) -> None:
        """Publishes one HTTP-01 challenge response per pending authorization and asks the server to validate it.

        The token of every challenge is appended to *published* before its publication is attempted,
        so that the caller can clean up after a partial failure.
        """
        with acme_errors("complete the challenges"):
            for authorization_url in order.authorizations:
                authorization = await self._client.authorization_get(authorization_url)

                if authorization.status != acme.messages.STATUS_PENDING:
                    logger.debug(
                        "Authorization %s is %s, nothing to publish",
                        authorization_url,
                        authorization.status,
                    )
                    continue

                challenge = self._select_challenge(authorization)
                token, content = self._client.challenge_response(challenge)

                published.append(token)
                await self._solver.publish(token, content)
                logger.info(
                    "Published challenge response for %s, token %s",
                    authorization.identifier.value,
                    token,
                )

                await self._client.challenge_validate(challenge.uri)

    def _select_challenge(
        self, authorization: acme.messages.Authorization
    ) -> acme.messages.ChallengeBody:
        supported = [ChallengeType(t).value for t in self._solver.SUPPORTED_CHALLENGES]

        for challenge in authorization.challenges:
            if challenge.chall.typ in supported:
                return challenge

        raise ACMEError(
            f"The server did not offer a supported challenge ({', '.join(supported)}) "
            f"for {authorization.identifier.value}"
        )

    async def challenges_cleanup(self, published: typing.List[str]) -> None:
        for token in published:
            try:
                await self._solver.cleanup(token)
            except Exception:
                logger.exception("Could not clean up the challenge response for token %s", token)

    async def order_await_validation(self, order: messages.Order) -> messages.Order:
        """Polls the order until the server has decided about its authorizations.

        :raises: :class:`~agwcert.exceptions.ACMEError` If the order became invalid. The errors of the
            order's authorizations are collected in :attr:`problems` beforehand.
        :return: The order in state *ready*, which is the only state :meth:`order_finalize` accepts.
        """
        with acme_errors("poll the order"):
            order = await self._validation.poll_until(
                self._client.order_get, order.url, predicate=has_left_validation
            )

        logger.info("Order %s is %s", order.url, order.status)

        if is_invalid(order):
            problems = await self.authorizations_report(order)
            raise ACMEError(
                f"Order {order.url} became invalid",
                problem=problems[0] if problems else order.error,
            )

        return order

    async def authorizations_report(
        self, order: messages.Order
    ) -> typing.List[acme.messages.Error]:
        """Fetches the order's authorizations and records why they failed."""
        problems = []

        with acme_errors("fetch the authorizations"):
            for authorization_url in order.authorizations:
                authorization = await self._client.authorization_get(authorization_url)

                for challenge in authorization.challenges:
                    if challenge.error is not None:
                        logger.error(
                            "Validation of %s failed, challenge %s: %s",
                            authorization.identifier.value,
                            challenge.uri,
                            challenge.error,
                        )
                        problems.append(challenge.error)

                if authorization.status == acme.messages.STATUS_INVALID and not any(
                    challenge.error for challenge in authorization.challenges
                ):
                    logger.error(
                        "Authorization %s for %s is invalid without a reported error",
                        authorization_url,
                        authorization.identifier.value,
                    )

        if order.error is not None:
            logger.error("Order %s reported: %s", order.url, order.error)

        self.problems = problems
        return problems

    async def order_finalize(self, order: messages.Order, domain: str):
        """Generates the certificate key and submits a CSR for *domain*.

        :return: The order as returned by the server and the certificate's private key.
        """
        if order_status(order) != OrderStatus.READY:
            raise ACMEError(
                f"Order {order.url} cannot be finalized in state {order.status}"
            )

        private_key = agwcert.util.generate_key(
            self._workdir / "certificate.key", self._key_type
        )
        csr = agwcert.util.generate_csr(
            domain, private_key, self._workdir / "certificate.csr", [domain]
        )

        with acme_errors("finalize the order"):
            finalized = await self._client.order_finalize(order, csr)
        logger.info("Submitted CSR for %s", ", ".join(sorted(agwcert.util.names_of(csr))))

        return finalized, private_key

    async def order_await_certificate(self, order: messages.Order) -> messages.Order:
        """Polls the order until its certificate URL is available.

        :raises: :class:`~agwcert.exceptions.ACMEError` If the order became invalid or the certificate
            did not become available in time.
        """
        if has_certificate(order):
            return order

        with acme_errors("poll the order"):
            order = await self._certificate.poll_until(
                self._client.order_get,
                order.url,
                predicate=has_certificate,
                negative_predicate=is_invalid,
            )

        logger.info("Certificate of order %s available at %s", order.url, order.certificate)
        return order

    async def certificate_export(
        self, order: messages.Order, private_key, domain: str
    ) -> CertificateBundle:
        """Downloads the order's certificate chain and packages it with *private_key* as PFX."""
        with acme_errors("download the certificate"):
            fullchain = await self._client.certificate_get(order)

        try:
            pfx = agwcert.util.export_pfx(fullchain, private_key, self._pfx_password, domain)
        except ValueError as e:
            raise ACMEError(f"Could not export the certificate for {domain}: {e}") from e

        path = self._workdir / f"{domain}.pfx"
        agwcert.util.write_private(path, pfx)

        return CertificateBundle(
            domain=domain,
            fullchain=fullchain,
            pfx=pfx,
            password=self._pfx_password,
            path=path,
        )
