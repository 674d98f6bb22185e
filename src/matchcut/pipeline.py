"""Batch sequencing: master-vs-target alignment, ensemble correction,
perspective correction and optional generated variations."""

import asyncio
import dataclasses
import logging
import threading
from typing import Callable, Generator, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .align.aligner import AlignmentResult, ImageAligner
from .compositor import composite
from .errors import (
    AlignmentError,
    InsufficientMatches,
    MasterNotFound,
    ProcessedMasterMissing,
)
from .models import (
    AlignmentSettings,
    BatchReport,
    FileFailure,
    PipelineSettings,
    ProcessedArtifact,
    SourceImage,
)
from .refiner import GoldenTemplateRefiner
from .variations import GenerativeBackend, generate_variations

log = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ProgressEvent:
    stage: int
    stage_count: int
    label: str
    completed: int
    total: int
    file_name: Optional[str] = None

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return 100.0 * self.completed / self.total


def friendly_message(error: Exception, context: str) -> str:
    """User-facing text for a failed file."""
    if isinstance(error, InsufficientMatches):
        return (
            f'Alignment failed for "{context}". The image may be too blurry, '
            "low-contrast, or different from the master. "
            'Tip: Try enabling "Greedy Mode" for difficult images.'
        )
    return f'An error occurred with "{context}": {error}'


class BatchPipeline:
    """Drives alignment of a file set against one master image.

    One worker runs the files in order. A progress event is emitted after
    every file; that is where cancellation is checked and where `run_async`
    hands control back to the event loop.
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        aligner: Optional[ImageAligner] = None,
        refiner: Optional[GoldenTemplateRefiner] = None,
        backend: Optional[GenerativeBackend] = None,
    ):
        self.settings = settings or PipelineSettings()
        self.aligner = aligner or ImageAligner()
        self.refiner = refiner or GoldenTemplateRefiner(self.aligner)
        self.backend = backend

    def process_file(
        self,
        master: np.ndarray,
        target: np.ndarray,
        settings: AlignmentSettings,
        is_master: bool = False,
    ) -> Tuple[np.ndarray, AlignmentResult]:
        """Align, warp and pad one target. Returns (image, alignment result)."""
        result = self.aligner.align_with(master, target, settings, is_master=is_master)
        canvas = composite(target, result.transform, master.shape, settings.aspect_ratio)
        return canvas, result

    def run(
        self,
        sources: Sequence[SourceImage],
        master_id: str,
        cancel: Optional[threading.Event] = None,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> BatchReport:
        steps = self._execute(sources, master_id, cancel)
        while True:
            try:
                event = next(steps)
            except StopIteration as stop:
                return stop.value
            if on_progress is not None:
                on_progress(event)

    async def run_async(
        self,
        sources: Sequence[SourceImage],
        master_id: str,
        cancel: Optional[threading.Event] = None,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> BatchReport:
        steps = self._execute(sources, master_id, cancel)
        while True:
            try:
                event = next(steps)
            except StopIteration as stop:
                return stop.value
            if on_progress is not None:
                on_progress(event)
            await asyncio.sleep(0)

    def _execute(
        self,
        sources: Sequence[SourceImage],
        master_id: str,
        cancel: Optional[threading.Event],
    ) -> Generator[ProgressEvent, None, BatchReport]:
        settings = self.settings
        master = next((ss for ss in sources if ss.id == master_id), None)
        if master is None:
            raise MasterNotFound(master_id)

        standard = [ss for ss in sources if not ss.needs_perspective]
        perspective = [
            ss for ss in sources if ss.needs_perspective and ss.id != master_id
        ]
        num_variations = settings.num_variations if self.backend is not None else 0
        total = len(standard) + len(perspective) + num_variations
        stage_count = 2 + (1 if perspective else 0) + (1 if num_variations else 0)
        completed = 0
        stage = 0
        report = BatchReport()

        def progress(label, file_name=None):
            return ProgressEvent(stage, stage_count, label, completed, total, file_name)

        def cancelled():
            if cancel is not None and cancel.is_set():
                log.warning("Batch run cancelled.")
                report.cancelled = True
                return True
            return False

        # --- Stage 1: standard files ---
        stage += 1
        label = "Aligning standard images"
        yield progress(label)
        for source in standard:
            if cancelled():
                return report
            self._process_into(
                report,
                master.image,
                source,
                settings.alignment(perspective=False),
                is_master=source.id == master_id,
            )
            completed += 1
            yield progress(label, source.name)

        # --- Stage 2: ensemble correction ---
        stage += 1
        if settings.ensemble_correction and len(report.artifacts) > 1:
            golden = report.get(master_id)
            if golden is None:
                log.warning("Master has no stage 1 result, skipping ensemble correction.")
            else:
                label = "Applying ensemble correction"
                yield progress(label)
                refined = {golden.id: golden}
                for artifact in report.artifacts:
                    if artifact.id == master_id:
                        continue
                    if cancelled():
                        break
                    image = self.refiner.refine(artifact.image, golden.image)
                    refined[artifact.id] = artifact.replace(image=image)
                    yield progress(label, artifact.original_name)
                # master first, then the others in their stage 1 order
                others = [
                    refined.get(aa.id, aa) for aa in report.artifacts if aa.id != master_id
                ]
                report.artifacts = [golden] + others
                if report.cancelled:
                    return report

        # --- Stage 3: perspective files ---
        if perspective:
            stage += 1
            label = "Correcting perspective images"
            yield progress(label)
            processed_master = report.get(master_id)
            if processed_master is None:
                raise ProcessedMasterMissing("perspective alignment")
            for source in perspective:
                if cancelled():
                    return report
                self._process_into(
                    report,
                    processed_master.image,
                    source,
                    settings.alignment(perspective=True),
                    is_master=False,
                    golden=processed_master.image,
                )
                completed += 1
                yield progress(label, source.name)

        # --- Stage 4: generated variations ---
        if num_variations:
            stage += 1
            if cancelled():
                return report
            label = "Generating & aligning AI variations"
            yield progress(label)
            processed_master = report.get(master_id)
            if processed_master is None:
                raise ProcessedMasterMissing("AI generation")
            artifacts, failures = generate_variations(
                self.backend,
                list(report.artifacts),
                processed_master,
                num_variations,
                refiner=self.refiner,
                snippets=settings.prompt_snippets,
                timeout=settings.variation_timeout,
            )
            report.artifacts.extend(artifacts)
            report.failures.extend(failures)
            completed += num_variations
            yield progress(label)

        log.info(
            f"Batch finished: {len(report.artifacts)} artifact(s), "
            f"{len(report.failures)} failure(s)"
        )
        return report

    def _process_into(
        self,
        report: BatchReport,
        reference: np.ndarray,
        source: SourceImage,
        settings: AlignmentSettings,
        is_master: bool,
        golden: Optional[np.ndarray] = None,
    ):
        """Process one file, recording either its artifact or its failure."""
        try:
            image, result = self.process_file(
                reference, source.image, settings, is_master
            )
        except (AlignmentError, cv2.error, ValueError) as e:
            log.error(
                f"Error processing {source.name}: {e}",
                exc_info=log.isEnabledFor(logging.DEBUG),
            )
            report.failures.append(self._failure(source, e))
            return
        except Exception as e:
            log.error(f"Unexpected error processing {source.name}: {e}", exc_info=True)
            report.failures.append(self._failure(source, e))
            return
        if golden is not None:
            image = self.refiner.refine(image, golden)
        report.artifacts.append(
            ProcessedArtifact(
                id=source.id,
                original_name=source.name,
                image=image,
                diagnostic=result.diagnostic,
                n_matches=len(result.matches) or None,
            )
        )

    @staticmethod
    def _failure(source: SourceImage, error: Exception) -> FileFailure:
        return FileFailure(
            id=source.id,
            name=source.name,
            message=friendly_message(error, source.name),
            row_num=source.row_num,
        )

    def fix_perspective(
        self,
        report: BatchReport,
        file_id: str,
        master_id: str,
        source: Optional[SourceImage] = None,
    ) -> BatchReport:
        """Reprocess one file with perspective correction.

        The file's artifact is replaced wholesale. Without a `source`, the
        unaligned image kept as the artifact's diagnostic is used, which is
        how generated variations are retried.
        """
        processed_master = report.get(master_id)
        if processed_master is None:
            raise ProcessedMasterMissing("perspective fix")

        previous = report.get(file_id)
        if source is not None:
            target, name = source.image, source.name
        elif previous is not None:
            target, name = previous.diagnostic, previous.original_name
        else:
            raise KeyError(f"Required files for perspective fix not found: {file_id}")

        image, result = self.process_file(
            processed_master.image, target, self.settings.alignment(True)
        )
        image = self.refiner.refine(image, processed_master.image)
        artifact = ProcessedArtifact(
            id=file_id,
            original_name=name,
            image=image,
            diagnostic=result.diagnostic,
            n_matches=len(result.matches) or None,
        )

        artifacts: List[ProcessedArtifact] = []
        replaced = False
        for existing in report.artifacts:
            if existing.id == file_id:
                artifacts.append(artifact)
                replaced = True
            else:
                artifacts.append(existing)
        if not replaced:
            artifacts.append(artifact)
        failures = [ff for ff in report.failures if ff.id != file_id]
        return BatchReport(artifacts=artifacts, failures=failures, cancelled=report.cancelled)
