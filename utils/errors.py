"""
Control plane error taxonomy
Each error carries the HTTP status and machine-readable code it is rendered with
"""


class ControlPlaneError(Exception):
    """Base class for errors surfaced to callers verbatim"""
    status_code = 500
    code = 'internal_error'

    def __init__(self, message=None, code=None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code

    def to_dict(self):
        return {'error': self.code, 'message': self.message}


class Unauthorized(ControlPlaneError):
    """Caller identity could not be established"""
    status_code = 401
    code = 'unauthorized'


class Forbidden(ControlPlaneError):
    """Caller does not own the target and is not an administrator"""
    status_code = 403
    code = 'forbidden'


class InvalidArgument(ControlPlaneError):
    """Malformed request: bad target addressing or missing fields"""
    status_code = 400
    code = 'invalid_argument'


class NotFound(ControlPlaneError):
    status_code = 404
    code = 'not_found'


class Transient(ControlPlaneError):
    """Persistence or downstream failure, safe to retry"""
    status_code = 503
    code = 'transient_failure'

    def to_dict(self):
        data = super().to_dict()
        data['retryable'] = True
        return data


class RateLimited(ControlPlaneError):
    status_code = 429
    code = 'rate_limited'

    def __init__(self, message=None, retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self):
        data = super().to_dict()
        if self.retry_after is not None:
            data['retry_after'] = self.retry_after
        return data


def commit_session(session, action, logger):
    """
    Commit the current unit of work.

    Persistence failures are rolled back and surfaced as ``Transient`` so the
    caller can retry.
    """
    from sqlalchemy.exc import SQLAlchemyError

    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f'Failed to {action}: {e}')
        raise Transient(f'Could not {action}, please retry') from e
