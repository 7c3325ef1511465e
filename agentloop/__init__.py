"""agentloop - bounded think/act agent loop with a persistent shell tool."""

__version__ = "0.1.0"

from agentloop.config import Config
from agentloop.main import build_agent

__all__ = ["Config", "build_agent", "__version__"]
