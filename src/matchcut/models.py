"""Core data structures for the matchcut application."""

import dataclasses
import enum
from typing import List, Optional

import numpy as np


class AspectRatio(str, enum.Enum):
    """Canonical output canvas shape, written as width:height."""

    PORTRAIT = "9:16"
    SQUARE = "1:1"
    LANDSCAPE = "16:9"

    @property
    def ratio(self) -> float:
        width, height = self.value.split(":")
        return float(width) / float(height)

    @classmethod
    def parse(cls, text: str) -> "AspectRatio":
        try:
            return cls(text.strip())
        except ValueError:
            choices = ", ".join(aa.value for aa in cls)
            raise ValueError(f"Unknown aspect ratio {text!r} (expected {choices})")


@dataclasses.dataclass(frozen=True)
class MatchConfig:
    """Ratio-test threshold and minimum good-match count."""

    ratio: float
    min_matches: int

    @classmethod
    def for_mode(cls, greedy: bool) -> "MatchConfig":
        if greedy:
            return GREEDY_MATCHING
        return NORMAL_MATCHING


NORMAL_MATCHING = MatchConfig(ratio=0.75, min_matches=10)
GREEDY_MATCHING = MatchConfig(ratio=0.85, min_matches=5)


@dataclasses.dataclass
class AlignmentSettings:
    """Parameters for aligning one target against a reference."""

    greedy: bool = False
    refine: bool = True
    perspective: bool = False
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT


@dataclasses.dataclass
class PipelineSettings:
    """Parameters for a whole batch run."""

    greedy: bool = False
    refine: bool = True
    ensemble_correction: bool = True
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT
    num_variations: int = 0
    prompt_snippets: Optional[List[str]] = None
    variation_timeout: float = 120.0

    def alignment(self, perspective: bool = False) -> AlignmentSettings:
        return AlignmentSettings(
            greedy=self.greedy,
            refine=self.refine,
            perspective=perspective,
            aspect_ratio=self.aspect_ratio,
        )


@dataclasses.dataclass
class SourceImage:
    """An input file of the batch."""

    id: str
    name: str
    image: np.ndarray
    needs_perspective: bool = False
    row_num: Optional[int] = None  # For batch mode context


@dataclasses.dataclass(frozen=True)
class ProcessedArtifact:
    """Final composited image of one file plus its diagnostic image."""

    id: str
    original_name: str
    image: np.ndarray
    diagnostic: np.ndarray
    n_matches: Optional[int] = None

    def replace(self, **changes) -> "ProcessedArtifact":
        return dataclasses.replace(self, **changes)


@dataclasses.dataclass(frozen=True)
class FileFailure:
    """A file that produced no artifact."""

    id: str
    name: str
    message: str
    row_num: Optional[int] = None


@dataclasses.dataclass
class BatchReport:
    """Result of a batch run."""

    artifacts: List[ProcessedArtifact] = dataclasses.field(default_factory=list)
    failures: List[FileFailure] = dataclasses.field(default_factory=list)
    cancelled: bool = False

    @property
    def error_message(self) -> Optional[str]:
        if not self.failures:
            return None
        return " | ".join(ff.message for ff in self.failures)

    def get(self, artifact_id: str) -> Optional[ProcessedArtifact]:
        for artifact in self.artifacts:
            if artifact.id == artifact_id:
                return artifact
        return None
