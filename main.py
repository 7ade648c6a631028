"""Headless heartbeat extraction: load a recording, run the pipeline, report and save."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Callable, List, Optional, Sequence

from analysis.models import RATE_SCALE
from analysis.settings import SPECIES_PRESETS, ProcessingParameters
from core import PipelineController, StageOutcome
from recording.loaders import load_recording

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Extract heartbeats and heart rate from a single-channel ECG recording.")
    parser.add_argument("input", help="WAV, .npy, .csv or .txt recording")
    parser.add_argument("--rate", type=float, default=None, help="sample rate in Hz for single-column data")
    parser.add_argument("--channel", type=int, default=0, help="channel index (default: 0)")
    parser.add_argument("--species", choices=sorted(SPECIES_PRESETS), default="Mouse")
    parser.add_argument("--threshold", type=float, default=None, help="detection threshold override")
    parser.add_argument(
        "--auto-lower",
        action="store_true",
        help="accept the suggested lower threshold when too few beats are detected",
    )
    parser.add_argument("--passes", type=int, default=None, help="number of projection passes")
    parser.add_argument("--workers", type=int, default=1, help="threads used for projection ranges")
    parser.add_argument("--session", default=None, help="write the session JSON to this path")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    return parser


def _threshold_announcer(initial: float) -> Callable[[ProcessingParameters], None]:
    """Print the detection threshold whenever a committed edit changes it."""
    last = initial

    def announce(params: ProcessingParameters) -> None:
        nonlocal last
        if params.threshold != last:
            print(f"detection threshold set to {params.threshold:g}")
            last = params.threshold

    return announce


def _report(outcomes: Sequence[StageOutcome]) -> Optional[StageOutcome]:
    for outcome in outcomes:
        if not outcome.ok:
            return outcome
        state = "ran" if outcome.ran else "unchanged"
        logger.debug("Stage %s %s %s", outcome.stage, state, outcome.info)
    return None


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        recording = load_recording(args.input, sample_rate=args.rate, channel=args.channel)
    except (OSError, ValueError) as exc:
        logger.error("Could not load %s: %s", args.input, exc)
        return 2

    overrides = {}
    if args.threshold is not None:
        overrides["threshold"] = args.threshold
    if args.passes is not None:
        overrides["pass_number"] = args.passes
    controller = PipelineController(params=ProcessingParameters.for_species(args.species), max_workers=args.workers)
    controller.load_recording(recording)
    if overrides:
        edit = controller.update_parameters(**overrides)
        if not edit.ok:
            logger.error("Invalid parameters: %s", edit.failure.message)
            return 2
    controller.parameters_store.subscribe(_threshold_announcer(controller.parameters.threshold), replay=False)

    confirm = (lambda suggested: True) if args.auto_lower else None
    failed = _report(controller.run(confirm=confirm))
    if failed is not None:
        failure = failed.failure
        logger.error("%s failed (%s): %s", failure.stage, failure.kind, failure.message)
        suggested = failure.details.get("suggested_threshold")
        if suggested is not None:
            logger.error("Re-run with --auto-lower or --threshold %g", suggested)
        return 1

    params = controller.parameters
    beats = controller.heart_beats
    series = controller.heart_rate
    mean = series.mean() if series is not None else None
    print(f"{recording.channel}: {beats.size} beats over {recording.duration:.2f} s")
    if mean is not None:
        print(f"mean heart rate: {mean * RATE_SCALE[params.unit]:.2f} {params.unit}")
    if controller.artefacts:
        print(f"artefact spans: {len(controller.artefacts)}")
    if controller.unresolved:
        print(f"unresolved suspicious spans: {len(controller.unresolved)}")

    if args.session:
        saved = controller.save_session(args.session)
        if not saved.ok:
            logger.error("Could not save session: %s", saved.failure.message)
            return 1
        print(f"session saved ({saved.info['saved_at']})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
