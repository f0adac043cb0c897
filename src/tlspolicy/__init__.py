"""TLS protocol-version policy for HTTP client transports."""

__version__ = "0.1.0"
