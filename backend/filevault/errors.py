"""Error taxonomy for the storage core.

Every failure a collaborator can observe is a ``FileVaultError``. ``retryable``
tells callers whether the same request may succeed later; access, expiry and
exhaustion failures are terminal for that record/requester.
"""


class FileVaultError(Exception):
    """Base class for all storage-core failures."""

    status_code: int = 500
    retryable: bool = True
    code: str = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(FileVaultError):
    status_code = 400
    code = "validation_error"


class AccessDenied(FileVaultError):
    status_code = 403
    retryable = False
    code = "access_denied"


class NotFound(FileVaultError):
    status_code = 404
    code = "not_found"


class Expired(FileVaultError):
    status_code = 410
    retryable = False
    code = "expired"


class Exhausted(FileVaultError):
    status_code = 410
    retryable = False
    code = "exhausted"


class CorruptedContent(FileVaultError):
    """Stored ciphertext could not be turned back into the uploaded bytes."""

    status_code = 422
    code = "corrupted_content"


class IntegrityError(CorruptedContent):
    """Authenticated decryption rejected the ciphertext or its metadata."""

    code = "integrity_error"


class StorageUnavailable(FileVaultError):
    status_code = 503
    code = "storage_unavailable"


class CryptoUnavailable(FileVaultError):
    status_code = 503
    code = "crypto_unavailable"
