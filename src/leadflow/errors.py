from __future__ import annotations


class LeadflowError(Exception):
    retryable = False

    def __init__(self, message: str = "", *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict:
        return {"error": str(self) or self.__class__.__name__, "type": self.__class__.__name__, "retryable": self.retryable}


class RowValidationError(LeadflowError):
    pass


class ArtifactAbortedError(LeadflowError):
    def __init__(self, artifact_id: str, error_count: int) -> None:
        super().__init__(f"artifact {artifact_id} aborted after {error_count} row errors")
        self.artifact_id = artifact_id
        self.error_count = error_count


class PayloadValidationError(LeadflowError):
    pass


class TransportError(LeadflowError):
    retryable = True


class BatchSourceError(LeadflowError):
    retryable = True


class StoreUnavailableError(LeadflowError):
    retryable = True


class SequenceNotFoundError(LeadflowError):
    pass


class SequenceDefinitionError(LeadflowError):
    pass


class LeadNotFoundError(LeadflowError):
    pass
