class RelanceError(Exception):
    """Base error; carries the HTTP status the API answers with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(RelanceError):
    status_code = 401


class ValidationError(RelanceError):
    status_code = 400


class NotFoundError(RelanceError):
    status_code = 404


class UnexpectedError(RelanceError):
    status_code = 500


class ReminderStoreError(RelanceError):
    status_code = 500
