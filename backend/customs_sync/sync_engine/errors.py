"""Errors raised when a sync request is refused before any job starts."""


class SyncError(Exception):
    pass


class SyncValidationError(SyncError):
    """Bad period, stage or settings."""


class CredentialError(SyncValidationError):
    """Customs token or EDRPOU missing, or the token cannot be decrypted."""


class SyncAuthorizationError(SyncError):
    pass


class SyncAlreadyRunningError(SyncError):
    def __init__(self, job_id=None):
        super().__init__("A sync job is already running for this company")
        self.job_id = job_id


class SyncJobNotFoundError(SyncError):
    pass


class DeclarationNotFoundError(SyncError):
    pass
