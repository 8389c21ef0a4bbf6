"""Collectors package for Entra ID metrics.

Contains collector implementations for the different directory domains.
Each collector module provides fetch and generate_metrics functions that
are composed with the DomainPoller class.
"""

UNKNOWN = "unknown"
