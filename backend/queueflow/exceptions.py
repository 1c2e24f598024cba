class APIError(Exception):
    """
    Base exception for all queueflow errors that reach the HTTP layer.
    """
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

class NotFoundError(APIError):
    """
    Queue or token does not exist, or exists but belongs to another manager.
    Ownership mismatches are reported here too so callers cannot probe for existence.
    """
    def __init__(self, message: str = "Resource not found.", status_code: int = 404):
        super().__init__(message, status_code)

class ConflictError(APIError):
    """
    Illegal state transition, capacity exceeded, delete of a queue that still
    holds active tokens, or reorder of a token that is not waiting.
    """
    def __init__(self, message: str = "Operation conflicts with current state.", status_code: int = 409):
        super().__init__(message, status_code)

class InvalidArgumentError(APIError):
    def __init__(self, message: str = "Invalid argument.", status_code: int = 400):
        super().__init__(message, status_code)

class DependencyUnavailableError(APIError):
    """
    Storage or the queue lock could not be reached in time.
    This is the only error a caller is expected to retry.
    """
    def __init__(self, message: str = "A required dependency is unavailable. Please retry.", status_code: int = 503):
        super().__init__(message, status_code)
