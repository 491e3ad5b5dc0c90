"""
Error taxonomy and error reporting helpers for the RPA pipeline
"""

import traceback
from typing import Dict, Any, Optional
from flask import current_app, has_request_context, request
from datetime import datetime


class ErrorHandler:
    """Centralized error description and logging"""

    @staticmethod
    def describe(error: Exception, context: Dict[str, Any] = None, include_traceback: bool = False) -> Dict[str, Any]:
        """Build the structured error payload stored on items and runs"""
        details = {
            "error_type": type(error).__name__,
            "error_message": str(error) or type(error).__name__,
            "item_scoped": not getattr(error, "run_fatal", False),
            "context": context or {},
            "timestamp": datetime.utcnow().isoformat(),
        }
        if include_traceback:
            details["traceback"] = traceback.format_exc()
        return details

    @staticmethod
    def log_error(error: Exception, context: Dict[str, Any] = None) -> Dict[str, Any]:
        """Log error with context to the Flask logger and return the payload"""
        details = ErrorHandler.describe(error, context, include_traceback=True)
        if has_request_context():
            details["request_data"] = {"method": request.method, "url": request.url}
        current_app.logger.error("Error occurred: %s", details)
        return details

    @staticmethod
    def handle_item_error(error: Exception, item_id: Optional[int] = None, phase: str = None) -> Dict[str, Any]:
        """Item-scoped failure: logged, returned for the item's own metadata"""
        context = {"item_id": item_id, "phase": phase, "component": "batch"}
        current_app.logger.warning("Item %s failed during %s: %s", item_id, phase, error)
        return ErrorHandler.describe(error, context)

    @staticmethod
    def create_error_response(error: Exception, status_code: int = 500, context: Dict[str, Any] = None) -> tuple:
        """Create standardized error response"""
        error_id = f"ERR_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}"

        response = {
            "error": True,
            "error_id": error_id,
            "message": str(error),
            "type": type(error).__name__,
            "timestamp": datetime.utcnow().isoformat()
        }

        if context:
            response["context"] = context

        ErrorHandler.log_error(error, context)

        return response, status_code


class RPAError(Exception):
    """Base error for automation failures"""
    run_fatal = False


class AuthenticationError(RPAError):
    """Login rejected or login page unusable; no item can be reached"""
    run_fatal = True


class NavigationError(RPAError):
    """Expected page, control or listing could not be reached"""

    def __init__(self, message: str, run_fatal: bool = False) -> None:
        super().__init__(message)
        self.run_fatal = run_fatal


class PortalTimeoutError(NavigationError):
    """Bounded wait expired"""


class NotFoundError(RPAError):
    """Patient or visit absent at the source or in the portal"""


class ValidationRejection(RPAError):
    """A scraped field was rejected and left empty"""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class UnsupportedRouteError(RPAError):
    """Payer/portal code has no adapter"""

    def __init__(self, portal: Optional[str]) -> None:
        super().__init__(f"no adapter registered for portal code: {portal}")
        self.portal = portal


class ProcessInterrupted(RPAError):
    """Signal received while a run was in flight"""
    run_fatal = True

    def __init__(self, signum: Optional[int] = None, message: str = "Process exited before run completed.") -> None:
        super().__init__(message)
        self.signum = signum
