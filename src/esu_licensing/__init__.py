"""Bulk provisioning of Azure Arc ESU license resources."""

__version__ = "0.1.0"
