class UsageError(Exception):
    """
    base class for failures of a single usage fetch.
    """


class AuthError(UsageError):
    """
    the server rejected the stored credentials (401/403). The user
    has to provide a new session key.
    """

    def __init__(self, status_code: "int") -> "None":
        super().__init__(f"authentication failed with status {status_code}")
        self.status_code = status_code


class HttpError(UsageError):
    def __init__(self, status_code: "int") -> "None":
        super().__init__(f"unexpected status {status_code}")
        self.status_code = status_code


class InvalidResponse(UsageError):
    """
    the response body could not be decoded into a usage snapshot.
    """


class SecretStoreError(Exception):
    """
    raised by secret backends when a value cannot be read or written.
    """


class StateStoreError(Exception):
    """
    raised when the persisted account state cannot be read or written.
    """
