"""
proxyex - RTSP proxy server front end

Builds a proxy server configuration from INI files (with nested includes) and
command-line options, validates it, and starts an RTSP server that republishes
each configured back-end stream under its own name.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
