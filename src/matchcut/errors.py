"""Exceptions raised by the alignment engine and the batch pipeline."""

from typing import Sequence


class AlignmentError(Exception):
    """Base class for failures of a single image pair."""


class FeatureExtractionEmpty(AlignmentError):
    def __init__(self, message="Could not find features in one or both images."):
        super().__init__(message)


class InsufficientMatches(AlignmentError):
    """Too few correspondences survived the ratio test."""

    def __init__(self, count: int, required: int):
        self.count = count
        self.required = required
        super().__init__(
            f"Not enough good matches found for alignment - {count}/{required}."
        )


class TransformEstimationFailed(AlignmentError):
    """Every estimation strategy for a pair was exhausted."""

    def __init__(self, reasons: Sequence[str] = ()):
        self.reasons = list(reasons)
        detail = "; ".join(self.reasons) if self.reasons else "no consensus"
        super().__init__(f"Could not compute the transformation ({detail}).")


class RefinementSoftFailure(AlignmentError):
    """Raised and caught inside the golden-template refiner only."""


class PipelineError(Exception):
    """Invariant violation that aborts a whole batch run."""


class MasterNotFound(PipelineError):
    def __init__(self, master_id: str):
        self.master_id = master_id
        super().__init__(f"Master file not found: {master_id}")


class ProcessedMasterMissing(PipelineError):
    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Could not find processed master for {stage}.")
