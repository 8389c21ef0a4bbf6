"""Entra ID Prometheus Exporter.

Prometheus exporter for Microsoft Entra ID that periodically collects
directory statistics, users and devices via the Microsoft Graph API and
serves the cached results as metrics.
"""

__version__ = "0.1.0"
