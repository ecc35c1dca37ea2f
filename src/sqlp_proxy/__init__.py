"""
SQLP Line-Protocol SQL Proxy

Accepts raw socket connections carrying ``x-sqlp-*`` parameter lines, runs the
supplied statement against the requested data source and streams the rows back
as a minimal HTTP/1.0 response (JSON or XML body).
"""

__version__ = "0.1.0"
__author__ = "SQLP Proxy Team"

# Don't import server/protocol in __init__ to avoid sys.modules conflicts
# when running with python -m sqlp_proxy.server
# Users can import directly: from sqlp_proxy.server import SQLProxyServer

__all__ = ["__version__", "__author__"]
