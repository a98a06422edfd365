from .client import AcmeClient
from .challenge_solver import DummySolver, ChallengeSolver

__all__ = [
    "AcmeClient",
    "DummySolver",
    "ChallengeSolver",
]
