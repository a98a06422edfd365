import typing

import acme.messages
import josepy
from cryptography import x509
from cryptography.hazmat.primitives import serialization


def encode_csr(csr):
    # Encode CSR as JOSE Base-64 DER.
    return josepy.encode_b64jose(csr.public_bytes(encoding=serialization.Encoding.DER))


def decode_csr(b64der):
    return x509.load_der_x509_csr(josepy.json_util.decode_b64jose(b64der))


class CertificateRequest(josepy.JSONObjectWithFields):
    """Message type for certificate requests.

    Sent to the order's *finalize* URL by :meth:`~agwcert.client.AcmeClient.order_finalize`.
    """

    csr: "cryptography.x509.CertificateSigningRequest" = josepy.Field(
        "csr", decoder=decode_csr, encoder=encode_csr
    )
    """The certificate signing request."""


class NewOrder(josepy.JSONObjectWithFields):
    """Message type for new order requests."""

    identifiers: typing.List[typing.Dict[str, str]] = josepy.Field(
        "identifiers", omitempty=True
    )
    """The requested identifiers."""

    @classmethod
    def from_data(
        cls,
        identifiers: typing.Union[
            typing.List[typing.Dict[str, str]], typing.List[str]
        ] = None,
    ) -> "NewOrder":
        """Class factory that takes care of parsing the list of *identifiers*.

        :param identifiers: Either a :class:`list` of :class:`dict` where each dict consists of the keys *type* \
            and *value*, or a :class:`list` of :class:`str` that represent the DNS names.
        :return: The new order object.
        """
        if type(identifiers[0]) is str:
            identifiers = [
                dict(type="dns", value=identifier) for identifier in identifiers
            ]
        elif type(identifiers[0]) is not dict:
            raise ValueError(
                "Could not decode identifiers list. Must be either List(str) or List(dict) where "
                "the dict has two keys 'type' and 'value'"
            )

        return cls(identifiers=identifiers)


class Account(josepy.JSONObjectWithFields):
    """Patched :class:`acme.messages.Registration` message type that adds a *kid* field.

    This is the representation of a user account that the :class:`~agwcert.client.AcmeClient` uses internally.
    The :attr:`kid` field is sent to the remote server with every request and used for request verification.
    Fields that see no use inside the client have been removed.
    """

    status: str = josepy.Field("status", omitempty=True)
    """The account's status."""
    contact: typing.Tuple[str] = josepy.Field("contact", omitempty=True)
    """The account's contact info."""
    orders: str = josepy.Field("orders", omitempty=True)
    """URL of the account's orders list."""
    kid: str = josepy.Field("kid")
    """The account's key ID."""


class Order(acme.messages.Order):
    """Patched :class:`acme.messages.Order` message type that adds a *URL* field.

    The *URL* field is populated by copying the *Location* header from responses in the
    :class:`~agwcert.client.AcmeClient`, so that the order can be polled later on.
    """

    url: str = josepy.Field("url", omitempty=True)
    """The order's URL at the remote CA."""


class Problem(acme.messages.Error):
    """Patched :class:`acme.messages.Error` message type that keeps the HTTP *status* of the response.

    RFC 7807 problem documents may carry the status themselves. Otherwise the
    :class:`~agwcert.client.AcmeClient` copies it from the response that carried the document.
    """

    status: int = josepy.Field("status", omitempty=True)
    """The HTTP status code of the response."""
