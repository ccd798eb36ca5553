"""
ClusterMirror — a mirror-cluster node.

Authenticates to the authority server, pulls the manifest of content
this node must host, reconciles it against a content-addressable store,
and serves signed download requests from that store.
"""

import os

__version__ = "0.1.0"

NODE_HOME = os.environ.get("CLUSTERMIRROR_HOME", "~/.clustermirror")
DEFAULT_SERVER_URL = "https://openbmclapi.bangbang93.com"
USER_AGENT = f"clustermirror/{__version__}"
