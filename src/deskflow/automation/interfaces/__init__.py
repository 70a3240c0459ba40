"""
Automation Interfaces Layer
===========================

FastAPI route handlers for the automation engine.
"""

from deskflow.automation.interfaces.controllers import automation_router

__all__ = ["automation_router"]
