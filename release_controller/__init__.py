"""
A controller that converges Helm releases toward declared release requests.

A `HelmRelease` request names a chart, where to fetch it from (a git
repository subpath or a packaged chart archive) and the values to install it
with. The controller watches a store of these requests and installs, upgrades
or uninstalls the release so that it tracks edits to the request.
"""

__all__ = [
    "config",
    "exceptions",
    "helm_controller",
    "manifest",
    "source_controller",
    "store",
    "values",
]
