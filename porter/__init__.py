"""porter: fetch, cache and publish OCI artifacts"""

__version__ = "0.1.0"
