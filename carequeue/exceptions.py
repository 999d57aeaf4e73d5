# carequeue/exceptions.py
# Error taxonomy shared by the store, the gate and the queue service.
# Each class carries the HTTP status the API boundary answers with.


class CareQueueError(Exception):
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationRequired(CareQueueError):
    status_code = 401
    default_message = "Authentication required"


class AuthorizationDenied(CareQueueError):
    status_code = 403
    default_message = "Access denied"


class ValidationFailure(CareQueueError):
    status_code = 400
    default_message = "Invalid request data"


class NotFound(CareQueueError):
    status_code = 404
    default_message = "Not found"


class MissingRelation(CareQueueError):
    """A joined read followed a foreign key to a record that does not exist."""

    status_code = 404
    default_message = "Related record not found"
