"""
Automation Interfaces Layer
============================

Interface adapters (controllers) for the workflow automation module.

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from src.automation.interfaces.controllers import router as automation_router

__all__ = ["automation_router"]
