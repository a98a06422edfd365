from .certificate import CertificateBundle
from .challenge import ChallengeType
from .order import OrderStatus
from .state import PipelineState

__all__ = [
    "CertificateBundle",
    "ChallengeType",
    "OrderStatus",
    "PipelineState",
]
