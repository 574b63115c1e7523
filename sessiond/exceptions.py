class SessiondError(Exception):
    """Base exception for the session cache"""

    def __init__(self, message: str, code: str = "SES-0000"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ConfigurationError(SessiondError):
    """Invalid or missing configuration"""

    def __init__(self, message: str):
        super().__init__(message, code="SES-0001")


class SessiondShutDownError(SessiondError):
    """Service has been shut down"""

    def __init__(self, message: str = "Session service has been shut down"):
        super().__init__(message, code="SES-0002")


class StorageConnectivityError(SessiondError):
    """Redis could not be reached or rejected a command"""

    def __init__(self, message: str):
        super().__init__(message, code="SES-0003")


class VersionMismatchError(SessiondError):
    """Stored record was written with another schema version"""

    def __init__(self, found: int, expected: int):
        self.found = found
        self.expected = expected
        super().__init__(
            f"Session record version {found} does not match {expected}",
            code="SES-0004",
        )


class SessionLimitExceededError(SessiondError):
    """A session could not be added because a limit was hit"""


class MaxSessionsExceededError(SessionLimitExceededError):
    """Too many sessions cluster-wide"""

    def __init__(self, max_sessions: int):
        self.max_sessions = max_sessions
        super().__init__(
            f"Max. number of sessions ({max_sessions}) exceeded", code="SES-0101"
        )


class MaxSessionsPerUserExceededError(SessionLimitExceededError):
    """Too many sessions for one user"""

    def __init__(self, user_id: int, context_id: int, max_sessions: int):
        self.user_id = user_id
        self.context_id = context_id
        self.max_sessions = max_sessions
        super().__init__(
            f"Max. number of sessions ({max_sessions}) exceeded for user {user_id} "
            f"in context {context_id}",
            code="SES-0102",
        )


class MaxSessionsPerClientExceededError(SessionLimitExceededError):
    """Too many sessions for one user and client"""

    def __init__(self, user_id: int, context_id: int, client: str, max_sessions: int):
        self.user_id = user_id
        self.context_id = context_id
        self.client = client
        self.max_sessions = max_sessions
        super().__init__(
            f"Max. number of sessions ({max_sessions}) exceeded for client {client} "
            f"of user {user_id} in context {context_id}",
            code="SES-0103",
        )


class DuplicateAuthIdError(SessionLimitExceededError):
    """Authentication identifier already belongs to another live session"""

    def __init__(self, auth_id: str, login: str, existing_login: str):
        self.auth_id = auth_id
        self.login = login
        self.existing_login = existing_login
        super().__init__(
            f"Authentication identifier {auth_id} of login {login} is already in use "
            f"by login {existing_login}",
            code="SES-0104",
        )


class SessionNotFoundError(SessiondError):
    """Session does not exist (anymore)"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Session expired or not found", code="SES-0005")
