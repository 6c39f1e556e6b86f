"""HR Agent API - LLM gateway for HR recruiting workflows."""

__version__ = "0.1.0"
