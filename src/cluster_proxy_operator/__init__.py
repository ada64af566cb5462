"""Kubernetes operator maintaining the cluster-proxy CA, certificates and proxy-server resources."""

__version__ = "0.1.0"
