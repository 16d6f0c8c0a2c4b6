"""
Error taxonomy for synthesis jobs.

Every error carries a stable `kind` string that is sent to clients in
`synthesis_error` responses.
"""
from typing import Optional


class SynthesisError(Exception):
    kind = "InternalError"

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail


class DecodeError(SynthesisError):
    kind = "DecodeError"


class InvalidRequest(SynthesisError):
    kind = "InvalidRequest"


class InvalidFileName(SynthesisError):
    kind = "InvalidFileName"

    def __init__(self, name: str, reason: str):
        super().__init__(f"Invalid file name {name!r}: {reason}")
        self.name = name
        self.reason = reason


class WorkspaceCreationError(SynthesisError):
    kind = "WorkspaceCreationError"


class FileWriteError(SynthesisError):
    kind = "FileWriteError"


class SpawnError(SynthesisError):
    kind = "SpawnError"


class BuildFailure(SynthesisError):
    kind = "BuildFailure"

    def __init__(self, exit_code: int, detail: str = ""):
        super().__init__(detail or f"make exited with status {exit_code}")
        self.exit_code = exit_code


class MissingArtifact(SynthesisError):
    kind = "MissingArtifact"


class BuildTimeout(SynthesisError):
    kind = "BuildTimeout"


def error_exit_code(exc: BaseException) -> Optional[int]:
    return getattr(exc, "exit_code", None)
