"""
Error taxonomy + Flask error handlers.

Every error raised by the analytics core derives from AnalyticsError and
carries an HTTP status and a stable error_code. register_error_handlers()
turns them into the standard {success, error, message} envelope.
"""
import logging

from flask import jsonify

logger = logging.getLogger('app.errors')


class AnalyticsError(Exception):
    """Base class for all handled errors."""
    status_code = 500
    error_code = 'INTERNAL_ERROR'
    public_message = 'Something went wrong'

    def __init__(self, message=None):
        self.message = message or self.public_message
        super().__init__(self.message)

    def to_response(self):
        return {
            'success': False,
            'error': self.error_code,
            'message': self.message,
        }


class ValidationError(AnalyticsError):
    """Bad enum value, out-of-range number or missing field."""
    status_code = 400
    error_code = 'VALIDATION_ERROR'
    public_message = 'Invalid request'

    def __init__(self, message=None, details=None):
        super().__init__(message)
        self.details = details or {}

    def to_response(self):
        body = super().to_response()
        body['details'] = self.details
        return body


class AccessDeniedError(AnalyticsError):
    """Privacy or payment gating refused access. Never leaks internals."""
    status_code = 403
    error_code = 'ACCESS_DENIED'
    public_message = 'Access to this data is not allowed'

    def __init__(self, message=None, requires_payment=False):
        super().__init__(message)
        self.requires_payment = requires_payment

    def to_response(self):
        body = super().to_response()
        if self.requires_payment:
            body['requires_payment'] = True
        return body


class InsufficientBalanceError(AnalyticsError):
    status_code = 400
    error_code = 'INSUFFICIENT_BALANCE'
    public_message = 'Insufficient balance for this operation'


class NotFoundError(AnalyticsError):
    status_code = 404
    error_code = 'NOT_FOUND'
    public_message = 'Resource not found'


class UpstreamError(AnalyticsError):
    """Payment Gateway or indexer data unavailable. Safe to retry."""
    status_code = 503
    error_code = 'UPSTREAM_UNAVAILABLE'
    public_message = 'Service temporarily unavailable, please try again'
    retryable = True

    def __init__(self, message=None, service=None, context=None):
        # message is for logs only; clients always get public_message
        super().__init__(self.public_message)
        self.service = service
        self.context = context or {}
        self.detail = message or ''


def register_error_handlers(app):
    """Map the taxonomy onto JSON responses."""

    @app.errorhandler(UpstreamError)
    def handle_upstream(e):
        logger.error(
            "Upstream failure (%s): %s", e.service or 'unknown', e.detail,
            extra={'context': e.context},
        )
        return jsonify(e.to_response()), e.status_code

    @app.errorhandler(AnalyticsError)
    def handle_analytics_error(e):
        if e.status_code >= 500:
            logger.error("Unhandled analytics error: %s", e, exc_info=True)
        return jsonify(e.to_response()), e.status_code

    @app.errorhandler(404)
    def handle_404(e):
        return jsonify({'success': False, 'error': 'NOT_FOUND', 'message': 'Endpoint not found'}), 404

    @app.errorhandler(405)
    def handle_405(e):
        return jsonify({'success': False, 'error': 'METHOD_NOT_ALLOWED', 'message': 'Method not allowed'}), 405

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.error("Unexpected error: %s", e, exc_info=True)
        return jsonify({
            'success': False,
            'error': 'INTERNAL_ERROR',
            'message': 'Something went wrong',
        }), 500
