# bills_app/Sync/exceptions.py
#
#
#######################################################################################################################
#
# Functions:
from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base exception for sync errors. Every subclass carries a stable `code`."""
    code = "SYNC_ERROR"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}

class NotConfiguredError(SyncError):
    """Sync endpoint is missing or disabled."""
    code = "NOT_CONFIGURED"

class SyncLockedError(SyncError):
    """The stored credential is encrypted and the vault is locked."""
    code = "LOCKED"

class UnauthorizedError(SyncError):
    """A destructive remote operation needs an elevated (service role) credential."""
    code = "UNAUTHORIZED"

class CredentialError(SyncError):
    """The stored credential could not be decrypted with the active session."""
    code = "CREDENTIAL_ERROR"

class TransactionFailure(SyncError):
    """The local atomic replace could not commit and was rolled back."""
    code = "TRANSACTION_FAILED"

class RemoteError(SyncError):
    """Raised for any failure reported by the remote service, keeping its own code and message."""
    code = "REMOTE_ERROR"

    def __init__(self, operation: str, remote_message: str, remote_code: Optional[str] = None):
        self.operation = operation
        self.remote_code = remote_code
        self.remote_message = remote_message
        detail = f"[{remote_code}] {remote_message}" if remote_code else remote_message
        super().__init__(f"{operation} failed: {detail}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "operation": self.operation,
            "remoteCode": self.remote_code,
            "remoteMessage": self.remote_message,
        })
        return data

#
# End of bills_app/Sync/exceptions.py
########################################################################################################################
