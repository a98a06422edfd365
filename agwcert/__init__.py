from .client import AcmeClient
from .orchestrator import AcmeOrchestrator
from .pipeline import RenewalPipeline
from .version import __version__
from .plugin_base import PluginRegistry

__all__ = ["AcmeClient", "AcmeOrchestrator", "RenewalPipeline", "PluginRegistry"]
__version__ = __version__
