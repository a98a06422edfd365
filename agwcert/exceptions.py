import typing

import acme.messages


class RenewalException(Exception):
    """General exception raised by the renewal pipeline."""

    pass


class AuthError(RenewalException):
    """Exception that is raised if the identity/auth exchange with Azure failed."""

    pass


class ACMEError(RenewalException):
    """Exception that is raised if the ACME server rejected a request or an order became invalid."""

    def __init__(self, *args, problem: typing.Optional[acme.messages.Error] = None):
        super().__init__(*args)
        self.problem = problem
        """The problem document that the ACME server returned, if any."""

    def __str__(self):
        msg = super().__str__()
        if self.problem is not None:
            return f"{msg} ({self.problem})" if msg else str(self.problem)
        return msg


class PollingException(ACMEError):
    """Exception that is used to communicate polling timeouts or errors."""

    def __init__(self, obj, *args):
        super().__init__(*args)
        self.obj = obj


class PublishError(RenewalException):
    """Exception that is raised if the challenge response could not be written or deleted."""

    pass


class InstallError(RenewalException):
    """Exception that is raised if the gateway rejected the certificate update."""

    pass
