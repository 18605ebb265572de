class AnalyticsError(Exception):
    status_code = 400
    error_type = 'analytics'

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class ValidationFailed(AnalyticsError):
    """Invalid input"""
    status_code = 400
    error_type = 'validation'


class AuthorizationFailed(AnalyticsError):
    """Caller is not the site owner"""
    status_code = 403
    error_type = 'auth_owner'


class NotFound(AnalyticsError):
    """Site not found"""
    status_code = 404
    error_type = 'not_found'


class OwnershipConflict(AnalyticsError):
    """Owner does not match existing site owner"""
    status_code = 409
    error_type = 'owner_conflict'


class AuthenticationRequired(AnalyticsError):
    """Missing caller_pubkey"""
    status_code = 401
    error_type = 'auth_missing'
