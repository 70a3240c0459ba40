"""
Deskflow
========

Help-desk automation rule engine and SLA clock service.
"""

__version__ = "1.0.0"
