"""
Web dashboard for VC_SENS logging sessions.
"""

from .app import LoggerDashboard, create_app

__all__ = ["LoggerDashboard", "create_app"]
