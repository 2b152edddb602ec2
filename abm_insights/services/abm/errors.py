"""Shared error classes for the ABM pipeline, stores and run controller."""

from __future__ import annotations

from uuid import UUID


class AbmError(RuntimeError):
    """Base exception raised by the ABM service."""

    def __init__(self, message: str, code: str = "ABM_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ValidationError(AbmError):
    """Raised when a run request is malformed; no run is created."""

    def __init__(self, message: str, code: str = "422_INVALID_REQUEST") -> None:
        super().__init__(message, code=code)


class PipelineStageError(AbmError):
    """Raised inside a pipeline stage; converted to a fallback artifact by the orchestrator."""


class InsightStoreError(AbmError):
    """Raised when the vector store fails to save or retrieve chunks."""

    def __init__(self, message: str, code: str = "500_VECTOR_STORE") -> None:
        super().__init__(message, code=code)


class SimilarityUnavailableError(InsightStoreError):
    """Raised when the store cannot rank by vector similarity."""

    def __init__(self, message: str = "Similarity search is unavailable.") -> None:
        super().__init__(message, code="503_SIMILARITY_UNAVAILABLE")


class RunPersistenceError(AbmError):
    """Raised when the run store is unavailable."""

    def __init__(self, message: str, code: str = "500_RUN_STORE") -> None:
        super().__init__(message, code=code)


class RunStateError(AbmError):
    """Raised on an illegal run status transition."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="409_RUN_ALREADY_FINALIZED")


class RunNotFoundError(AbmError):
    def __init__(self, run_id: UUID | str) -> None:
        super().__init__(f"Run {run_id} not found.", code="404_RUN_NOT_FOUND")
        self.run_id = run_id


class RunFailedError(AbmError):
    """Raised when a run was created but could not complete; carries the run id."""

    def __init__(self, message: str, *, run_id: UUID) -> None:
        super().__init__(message, code="500_RUN_FAILED")
        self.run_id = run_id
