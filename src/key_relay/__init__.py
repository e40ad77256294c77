"""Key relay: a reverse proxy over a self-replenishing pool of upstream API keys."""

__version__ = "0.1.0"
