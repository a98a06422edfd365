import enum


class PipelineState(str, enum.Enum):
    """The stages of a renewal run.

    Every stage may transition to :attr:`FAILED`, which is terminal like :attr:`DONE`.
    """

    AUTHENTICATING = "Authenticating"
    REGISTERING = "Registering"
    CHALLENGING = "Challenging"
    AWAITING_VALIDATION = "AwaitingValidation"
    FINALIZING = "Finalizing"
    AWAITING_CERTIFICATE = "AwaitingCertificate"
    INSTALLING = "Installing"
    DONE = "Done"
    FAILED = "Failed"
