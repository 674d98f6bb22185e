"""Synthesized variations from a generative image backend.

The backend itself is an external collaborator; this module builds prompts,
fans requests out in parallel and aligns whatever comes back onto the
processed master.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Protocol, Sequence, Tuple

from .image_io import decode_image, encode_png
from .models import FileFailure, ProcessedArtifact
from .refiner import GoldenTemplateRefiner

log = logging.getLogger(__name__)

PROMPT_BASE = (
    "Generate a completely new and creative photorealistic image. Crucially, "
    "the logo must appear perfectly flat and be viewed from a direct, head-on, "
    "frontal perspective, with zero angle or perspective distortion. The "
    "reference images show this exact logo. Your task is to create a completely "
    "new, photorealistic background scene. The logo's shape, colors, style, "
    "position, scale, and 2D rotation must be identical to the references. Do "
    "not wrap, bend, skew, or apply any 3D perspective to the logo itself."
)

DEFAULT_PROMPT_SNIPPETS = [
    "a storefront",
    "a product",
    "clothing",
    "a digital screen",
    "graffiti on a wall",
    "a hand written post it",
    "a flyer in a hand",
    "a mug print",
    "an embroidered logo on a baseball cap",
    "an embroidered logo on a T-shirt",
    "a trade show display",
]


class GenerativeBackend(Protocol):
    def generate(self, prompt: str, references: Sequence[bytes], timeout: float) -> bytes:
        """Return one encoded synthesized image or raise."""
        ...


def build_prompt(index: int, snippets: Optional[Sequence[str]] = None) -> str:
    """Prompt for the `index`-th variation, cycling through the snippets."""
    snippets = list(snippets or []) or DEFAULT_PROMPT_SNIPPETS
    snippet = snippets[index % len(snippets)]
    return (
        f"{PROMPT_BASE} The background should be a novel setting, like {snippet}, "
        "but the logo must always remain perfectly frontal and flat over it."
    )


def variation_id(index: int) -> str:
    return f"ai-var-{index}"


def variation_name(index: int) -> str:
    return f"AI_Variation_{index + 1:02d}.png"


def generate_variations(
    backend: GenerativeBackend,
    references: Sequence[ProcessedArtifact],
    processed_master: ProcessedArtifact,
    count: int,
    refiner: Optional[GoldenTemplateRefiner] = None,
    snippets: Optional[Sequence[str]] = None,
    timeout: float = 120.0,
    max_workers: Optional[int] = None,
) -> Tuple[List[ProcessedArtifact], List[FileFailure]]:
    """Request `count` variations concurrently.

    A failing variation never aborts its siblings; the returned artifacts are
    the ones that succeeded, in index order.
    """
    if count <= 0:
        return [], []
    refiner = refiner or GoldenTemplateRefiner()
    encoded = [encode_png(rr.image) for rr in references]

    def _one(index):
        prompt = build_prompt(index, snippets)
        log.info(f"Requesting variation {index + 1}/{count}")
        generated = decode_image(backend.generate(prompt, encoded, timeout))
        aligned = refiner.refine(generated, processed_master.image)
        return ProcessedArtifact(
            id=variation_id(index),
            original_name=variation_name(index),
            image=aligned,
            # the unaligned image is kept for a later perspective fix
            diagnostic=generated,
        )

    artifacts: List[ProcessedArtifact] = []
    failures: List[FileFailure] = []
    with ThreadPoolExecutor(max_workers=max_workers or count) as executor:
        futures = [(ii, executor.submit(_one, ii)) for ii in range(count)]
        for index, future in futures:
            try:
                artifacts.append(future.result())
            except Exception as e:
                message = f"Failed to create AI variation {index + 1}. {e}"
                log.error(message, exc_info=log.isEnabledFor(logging.DEBUG))
                failures.append(
                    FileFailure(
                        id=variation_id(index),
                        name=variation_name(index),
                        message=message,
                    )
                )
    log.info(f"{len(artifacts)}/{count} variation(s) created")
    return artifacts, failures
