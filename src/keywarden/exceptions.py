"""
Keywarden Exception Classes
"""


class KeywardenError(Exception):
    """Base exception for keywarden operations.

    ``step`` is filled in by the lifecycle orchestrator with the name of the
    step that failed (``generate``, ``backup``, ``install``, ...).
    """

    step = None


class InvalidConfiguration(KeywardenError):
    """Raised when settings or CLI options are invalid"""
    pass


class UnsupportedAlgorithmError(KeywardenError):
    """Raised when an algorithm/bit-size combination is not supported"""
    pass


class GenerationError(KeywardenError):
    """Raised when the key-generation primitive fails or produces no output"""
    pass


class KeyStoreIOError(KeywardenError, OSError):
    """Raised when key material or the authorization list cannot be written"""
    pass


class BackupError(KeywardenError):
    """Raised when a backup snapshot or restore fails"""
    pass


class BackupNotFoundError(BackupError):
    """Raised when a backup record no longer exists on disk"""
    pass


class InvalidDirectiveError(KeywardenError, ValueError):
    """Raised when a directive name or value cannot be written safely"""
    pass


class ConfigSyntaxError(KeywardenError):
    """Raised when the daemon rejects the reconciled configuration"""

    def __init__(self, message: str, path: str = "", output: str = ""):
        super().__init__(message)
        self.path = path
        self.output = output


class InvalidKeyFormatError(KeywardenError):
    """Raised when a public key line is malformed"""
    pass


class ServiceError(KeywardenError):
    """Raised when the SSH service cannot be installed, started or restarted"""
    pass


class OperatorAbort(KeywardenError):
    """Raised when the operator refuses a confirmation checkpoint"""
    pass


class LockHeldError(KeywardenError):
    """Raised when another keywarden run holds the lifecycle lock"""
    pass
