from enum import Enum
from typing import Optional


class Stage(str, Enum):
    """Pipeline stages a repository moves through during a pass."""
    CLONE = "clone"
    MERGE = "merge"
    BUMP = "bump"
    PUSH = "push"
    PULL_REQUEST = "pull_request"


class ModBumpException(Exception):
    """Base exception for all modbump-related errors."""
    pass

class ConfigurationException(ModBumpException):
    """Raised when the configuration file is missing or invalid."""
    pass

class DiscoveryException(ModBumpException):
    """Raised when repositories cannot be listed from the source-control host."""
    pass

class StorageException(ModBumpException):
    """Raised when the persisted snapshot cannot be loaded or saved."""
    pass

class SCMException(ModBumpException):
    """Raised when a source-control host API call fails."""
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)

class UpdateException(ModBumpException):
    """Raised when applying or reconciling dependency updates fails."""
    pass

class CommandFailedException(ModBumpException):
    """Raised when an external command exits with a non-zero status."""
    def __init__(self, args: list, returncode: int, stderr: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"command '{' '.join(self.command)}' failed (exit {returncode}): {stderr}")

class StageFailedException(ModBumpException):
    """Raised when one repository fails a pipeline stage."""
    def __init__(self, repository: str, stage: Stage, cause: BaseException):
        self.repository = repository
        self.stage = stage
        self.cause = cause
        super().__init__(f"repo '{repository}': {stage.value} failed: {cause}")
