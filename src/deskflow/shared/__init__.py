"""
Shared Kernel Module
====================

This module contains shared infrastructure used across all bounded
contexts (Automation and SLA).

Architecture Pattern: Modular Monolith
- Each module (automation, sla) is a bounded context
- Shared kernel contains only generic infrastructure

DO NOT add business logic from Automation or SLA to shared kernel.
"""

__version__ = "1.0.0"
