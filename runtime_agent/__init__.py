"""Runtime agent - host-level container lifecycle reconciler.

The agent receives container specifications from the control plane and
makes exactly one matching container run on the local Docker engine.
"""

from runtime_agent.version import __version__

__all__ = ["__version__"]
