from typing import Literal, Optional


class ABTestError(Exception):
    """Base error class for all AB testing library errors."""

    def __init__(self, message: str):
        super().__init__(f"[ABTesting] {message}")


class InitializationError(ABTestError):
    """Raised when an operation is attempted before a user identity exists."""

    def __init__(self, method_name: Optional[str] = None):
        self.method_name = method_name
        method_context = f" in {method_name}()" if method_name else ""
        super().__init__(
            f"Library not initialized{method_context}. "
            "Call initialize_user() before using get_variant() or other methods."
        )


class UserNotInitializedError(InitializationError):
    def __init__(self):
        ABTestError.__init__(
            self,
            "Cannot update user: user has not been initialized. Call initialize_user() first.",
        )
        self.method_name = "update_user"


# --- Local storage ---


class StorageError(ABTestError):
    pass


class StorageUnavailableError(StorageError):
    """No persistent local store exists in this environment."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            f"Local storage is not available for {operation}. "
            "Configure LOCAL_DATABASE_URL to enable the local cache."
        )


class StorageCorruptionError(StorageError):
    """A cached payload could not be parsed or written."""

    def __init__(self, key: Optional[str] = None):
        self.key = key
        key_context = f' for key "{key}"' if key else ""
        super().__init__(
            f"Failed to parse local storage data{key_context}. Data might be corrupted. "
            "Try clearing the local cache or reinitializing the user."
        )


class StorageQuotaExceededError(StorageError):
    """A write was rejected because the local store is full."""

    def __init__(self, key: Optional[str] = None):
        self.key = key
        key_context = f' for key "{key}"' if key else ""
        super().__init__(f"Local storage quota exceeded{key_context}. Cannot save data.")


def is_quota_exceeded_error(error: BaseException) -> bool:
    return isinstance(error, StorageQuotaExceededError)


# --- Remote storage ---


class AdapterNotInitializedError(ABTestError):
    def __init__(self):
        super().__init__(
            "RemoteStorageAdapter not initialized. "
            "Call initialize_library() with an adapter before using library methods."
        )


class NetworkError(ABTestError):
    """A remote call failed."""

    def __init__(self, operation: str, underlying_error: Optional[str] = None):
        self.operation = operation
        self.underlying_error = underlying_error
        error_context = f": {underlying_error}" if underlying_error else ""
        super().__init__(
            f"Network error during {operation}{error_context}. "
            "Please check your connection and try again."
        )


class AdapterError(NetworkError):
    """Raised by remote storage adapters on transport failure."""


class GetUserError(NetworkError):
    def __init__(self, user_id: str, underlying_error: Optional[str] = None):
        self.user_id = user_id
        super().__init__(f'get_user for user "{user_id}"', underlying_error)


class SaveUserError(NetworkError):
    def __init__(self, user_id: str, underlying_error: Optional[str] = None):
        self.user_id = user_id
        super().__init__(f'save_user for user "{user_id}"', underlying_error)


class GetExperimentsError(NetworkError):
    def __init__(self, underlying_error: Optional[str] = None):
        super().__init__("get_experiments", underlying_error)


class VariantOperationError(NetworkError):
    """A remote variant get/save failed; carries the user and experiment context."""

    def __init__(
        self,
        operation: Literal["get", "save"],
        user_id: str,
        experiment_key: str,
        underlying_error: Optional[str] = None,
    ):
        self.user_id = user_id
        self.experiment_key = experiment_key
        super().__init__(
            f'{operation} variant for user "{user_id}" and experiment "{experiment_key}"',
            underlying_error,
        )


# --- Experiments and identity ---


class ExperimentNotFoundError(ABTestError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(
            f'Experiment with key "{key}" not found. Ensure the experiment exists and is enabled.'
        )


class UserIdMismatchError(ABTestError):
    def __init__(self, current_id: str, attempted_id: str):
        self.current_id = current_id
        self.attempted_id = attempted_id
        super().__init__(
            f'Cannot update user: user ID mismatch. Current user ID is "{current_id}", '
            f'attempted to update with "{attempted_id}".'
        )


class RealtimeConnectionError(ABTestError):
    """The notification channel degraded; the library continues local-only."""

    def __init__(self, reason: Optional[Literal["timeout", "error", "closed"]] = None):
        self.reason = reason
        reason_context = f" ({reason})" if reason else ""
        super().__init__(
            f"Realtime connection failed{reason_context}. Library will continue in local-only mode."
        )
