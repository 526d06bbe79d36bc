"""Session orchestrator for a local chat application backed by a stateful inference engine"""

__version__ = "0.1.0"
