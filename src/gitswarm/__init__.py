"""gitswarm: consensus-gated collaborative merge engine."""

__version__ = "0.1.0"
