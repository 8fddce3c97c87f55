"""Web control panel and library for managing OpenVPN tunnels."""

__version__ = "0.1.0"
__all__ = ["__version__"]