"""ctxloop-agent: a bounded-context runtime for long-running coding agents."""

__version__ = "0.3.0"
