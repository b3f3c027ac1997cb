"""
loadplane - control plane for a distributed load-testing fleet.
"""

__version__ = "1.0.0"
