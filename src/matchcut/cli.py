"""Command-line interface for matchcut."""

import argparse
import csv
import logging
import os
import pathlib
import sys
import time
from typing import List, Optional, Tuple

import tqdm

from . import __version__, telemetry
from .align.aligner import QcPlotter
from .errors import PipelineError
from .export import export_artifacts
from .image_io import load_image
from .models import AspectRatio, BatchReport, FileFailure, PipelineSettings, SourceImage
from .pipeline import BatchPipeline, ProgressEvent

log = logging.getLogger(__name__)

TRUTHY = ("true", "1", "t", "y", "yes")


def configure_matplotlib_backend():
    """QC figures are only written to files."""
    import matplotlib

    try:
        matplotlib.use("Agg")
        log.debug("Using 'Agg' matplotlib backend.")
    except ImportError:
        log.error("Failed to import 'Agg' backend.")


def create_parser() -> argparse.ArgumentParser:
    """Creates the argument parser for the CLI."""
    os.environ["COLUMNS"] = "80"
    parser = argparse.ArgumentParser(
        description="Align photos of the same logo onto a master image.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    mode_group = parser.add_mutually_exclusive_group(required=True)
    mode_group.add_argument(
        "--batch-csv",
        metavar="FILE",
        help="CSV file with a 'path' column and optional 'master' and "
        "'needs-perspective' columns.",
    )
    mode_group.add_argument(
        "--master",
        metavar="IMAGE",
        help="Master image every other image is aligned to.",
    )
    parser.add_argument(
        "targets",
        nargs="*",
        metavar="IMAGE",
        help="Images to align onto the master.",
    )
    parser.add_argument(
        "--out-dir",
        default="matchcut-out",
        metavar="DIR",
        help="Output directory for aligned images.",
    )
    parser.add_argument(
        "--greedy",
        action="store_true",
        help="Looser ratio test and fewer required matches for difficult images.",
    )
    parser.add_argument(
        "--no-refine",
        action="store_true",
        help="Skip the second matching pass after the coarse affine.",
    )
    parser.add_argument(
        "--no-ensemble",
        action="store_true",
        help="Skip re-aligning results onto the processed master.",
    )
    parser.add_argument(
        "--perspective",
        action="append",
        default=[],
        metavar="IMAGE",
        help="Image that needs perspective correction (repeatable).",
    )
    parser.add_argument(
        "--aspect-ratio",
        type=AspectRatio.parse,
        default=AspectRatio.PORTRAIT,
        metavar="W:H",
        help="Output canvas aspect ratio (9:16, 1:1 or 16:9).",
    )
    parser.add_argument(
        "--qc-out-dir",
        type=str,
        default=None,
        metavar="DIR",
        help="Output directory for match diagnostic plots.",
    )
    parser.add_argument(
        "--save-diagnostics",
        action="store_true",
        help="Also write raw diagnostic images next to the outputs.",
    )
    parser.add_argument(
        "--debug-log",
        metavar="FILE",
        help="Write the most recent log records as JSON to FILE.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def prepare_batch_sources(
    csv_path: str, perspective_default: bool = False
) -> Tuple[List[Tuple[str, bool, bool, int]], Optional[str]]:
    """Reads the batch CSV.

    Returns ([(path, is_master, needs_perspective, row_num), ...], master_path).
    """
    log.info(f"Reading batch file list from: {csv_path}")
    rows = []
    master_path = None
    try:
        with open(csv_path, mode="r", encoding="utf-8-sig") as infile:
            reader = csv.DictReader(infile)
            if not reader.fieldnames:
                raise ValueError("CSV file appears to be empty or has no header.")
            # replace all - with _ in the header
            reader.fieldnames = [f.strip().replace("-", "_") for f in reader.fieldnames]
            if "path" not in reader.fieldnames:
                raise ValueError("CSV missing required headers: path")

            for i, row in enumerate(reader):
                row_num = i + 2
                path = (row.get("path") or "").strip()
                if not path:
                    log.warning(f"Skipping CSV row {row_num}: empty path. Row: {row}")
                    continue
                is_master = (row.get("master") or "").strip().lower() in TRUTHY
                perspective_csv = (row.get("needs_perspective") or "").strip()
                needs_perspective = perspective_default
                if perspective_csv != "":
                    needs_perspective = perspective_csv.lower() in TRUTHY
                if is_master:
                    if master_path is not None:
                        log.warning(
                            f"CSV row {row_num} marks a second master, "
                            f"keeping {master_path}"
                        )
                    else:
                        master_path = path
                rows.append((path, is_master, needs_perspective, row_num))
        log.info(f"Prepared {len(rows)} file(s) from CSV file.")
        return rows, master_path
    except FileNotFoundError:
        log.error(f"Batch CSV file not found: {csv_path}")
        raise
    except Exception as e:
        log.error(f"Failed to read or parse CSV file {csv_path}: {e}")
        raise


def load_sources(
    entries: List[Tuple[str, bool, int]],
) -> Tuple[List[SourceImage], List[FileFailure]]:
    """Loads (path, needs_perspective, row_num) entries into images."""
    sources, failures = [], []
    seen = set()
    for path, needs_perspective, row_num in entries:
        key = str(pathlib.Path(path))
        if key in seen:
            continue
        seen.add(key)
        name = pathlib.Path(path).name
        try:
            image = load_image(path)
        except (OSError, ValueError) as e:
            log.error(f"Could not load {path}: {e}")
            failures.append(
                FileFailure(
                    id=key,
                    name=name,
                    message=f"Could not load {name}: {e}",
                    row_num=row_num,
                )
            )
            continue
        sources.append(
            SourceImage(
                id=key,
                name=name,
                image=image,
                needs_perspective=needs_perspective,
                row_num=row_num,
            )
        )
    return sources, failures


def report_summary(
    report: BatchReport, load_failures: List[FileFailure], duration: float
):
    """Prints the final summary to the console."""
    failed_results = list(load_failures) + list(report.failures)
    print("\n--- Processing Summary ---")
    print(f"Images produced: {len(report.artifacts)}")
    print(f"Failed files: {len(failed_results)}")
    if report.cancelled:
        print("Run was cancelled before all files were processed.")
    if failed_results:
        print("\nFailures occurred:", file=sys.stderr)
        failed_results.sort(
            key=lambda r: r.row_num if r.row_num is not None else float("inf")
        )
        for result in failed_results:
            row_info = f" (CSV Row {result.row_num})" if result.row_num else ""
            msg = f"{result.name}{row_info}: {result.message}"
            print(f"  - {msg}", file=sys.stderr)
            log.warning(msg)
    print(f"\nTotal execution time: {duration:.2f} seconds")


def main():
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    ring = telemetry.install()
    if args.qc_out_dir is not None:
        configure_matplotlib_backend()

    perspective_paths = {str(pathlib.Path(pp)) for pp in args.perspective}
    if args.batch_csv:
        rows, master_path = prepare_batch_sources(args.batch_csv)
        if master_path is None:
            parser.error("The batch CSV must mark one row as master.")
        entries = [
            (path, needs or str(pathlib.Path(path)) in perspective_paths, row_num)
            for path, _, needs, row_num in rows
        ]
    else:
        master_path = args.master
        entries = [(args.master, False, None)] + [
            (path, str(pathlib.Path(path)) in perspective_paths, None)
            for path in args.targets
        ]

    settings = PipelineSettings(
        greedy=args.greedy,
        refine=not args.no_refine,
        ensemble_correction=not args.no_ensemble,
        aspect_ratio=args.aspect_ratio,
    )
    start_time = time.time()
    report = BatchReport()
    load_failures: List[FileFailure] = []
    try:
        sources, load_failures = load_sources(entries)
        master_id = str(pathlib.Path(master_path))
        pipeline = BatchPipeline(settings)

        with tqdm.tqdm(total=len(sources), desc="Processing Images") as pbar:

            def on_progress(event: ProgressEvent):
                pbar.total = event.total
                pbar.set_postfix_str(f"stage {event.stage}/{event.stage_count}")
                pbar.update(event.completed - pbar.n)

            report = pipeline.run(sources, master_id, on_progress=on_progress)

        export_artifacts(report.artifacts, args.out_dir, args.save_diagnostics)

        if args.qc_out_dir is not None:
            plotter = QcPlotter(args.qc_out_dir)
            master_name = pathlib.Path(master_path).name
            for artifact in report.artifacts:
                plotter.plot_matches(
                    artifact.original_name,
                    master_name,
                    artifact.diagnostic,
                    artifact.n_matches,
                )
            plotter.save_figures()
    except PipelineError as e:
        log.critical(f"Batch aborted: {e}")
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        log.critical(f"A critical error occurred: {e}", exc_info=True)
        print(f"\nError: A critical error occurred: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        if args.debug_log:
            ring.dump(args.debug_log)

    duration = time.time() - start_time
    report_summary(report, load_failures, duration)

    if load_failures or report.failures:
        sys.exit(1)
    else:
        sys.exit(0)


if __name__ == "__main__":
    main()
