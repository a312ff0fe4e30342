class ChatError(Exception):
    status_code = 500
    code = "chat_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ChatError):
    status_code = 400
    code = "validation_error"


class AuthorizationError(ChatError):
    status_code = 403
    code = "forbidden"


class NotFoundError(ChatError):
    status_code = 404
    code = "not_found"


class TransientStoreError(ChatError):
    status_code = 503
    code = "store_unavailable"
