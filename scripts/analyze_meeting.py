#!/usr/bin/env python3
"""Run the analysis stages for one recorded meeting from a JSON file.

The input file has the shape of the POST /v1/meetings body:
segments, transcript_text, intervals and profiles. No database is
used; the MeetingAnalysisResult is printed (or written) as JSON.

Usage:
    uv run python scripts/analyze_meeting.py meeting.json
    uv run python scripts/analyze_meeting.py meeting.json --output result.json
    uv run python scripts/analyze_meeting.py meeting.json --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from pathlib import Path

# Ensure project root is on sys.path so we can import src modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

logger = logging.getLogger(__name__)


def _load_context(path: Path, meeting_id: str):
    from src.meetflow.analysis.schemas import MeetingContext, MeetingCreate

    data = MeetingCreate.model_validate(
        {"owner_id": "cli", **json.loads(path.read_text(encoding="utf-8"))}
    )
    return MeetingContext(
        meeting_id=meeting_id,
        raw_segments=tuple(data.segments),
        transcript_text=data.transcript_text,
        intervals=tuple(data.intervals),
        profiles=tuple(data.profiles),
    )


async def analyze(path: Path, meeting_id: str, dry_run: bool = False) -> dict:
    """Analyze one meeting file and return the result as a JSON-ready dict.

    Args:
        path: Meeting JSON file.
        meeting_id: Id used for segment and topic ids.
        dry_run: Only assemble the transcript and extract conclusion
            blocks; no LLM calls.
    """
    from src.meetflow.analysis.assembler import assemble_transcript
    from src.meetflow.analysis.capability import LLMCapability
    from src.meetflow.analysis.gateway import AnalysisGateway, GatewayPolicy
    from src.meetflow.analysis.intervals import extract_conclusions
    from src.meetflow.analysis.orchestrator import StageOrchestrator, resolve_status
    from src.meetflow.config import get_settings
    from src.meetflow.services.llm import LLMService

    context = _load_context(path, meeting_id)

    if dry_run:
        segments = assemble_transcript(
            meeting_id, context.raw_segments, context.transcript_text
        )
        segments, blocks = extract_conclusions(segments, context.intervals)
        return {
            "meeting_id": meeting_id,
            "segments": [s.model_dump(mode="json") for s in segments],
            "conclusion_blocks": [b.model_dump(mode="json") for b in blocks],
        }

    settings = get_settings()
    llm_service = LLMService(settings)
    if not llm_service.available:
        print("Warning: no LLM API keys configured; litellm will use environment defaults.")

    gateway = AnalysisGateway(
        LLMCapability(llm_service=llm_service), GatewayPolicy.from_settings(settings)
    )
    orchestrator = StageOrchestrator(
        gateway, max_in_flight_per_meeting=settings.MAX_IN_FLIGHT_PER_MEETING
    )
    result = await orchestrator.run(context)

    status = resolve_status(result.stage_outcomes)
    print(f"Meeting status: {status.value} (partial={result.partial})", file=sys.stderr)
    for outcome in result.stage_outcomes:
        detail = outcome.reason or (outcome.error.message if outcome.error else "")
        print(
            f"  [{outcome.status.value:>7}] {outcome.stage.value} "
            f"attempts={outcome.attempts} {detail}",
            file=sys.stderr,
        )
    return result.model_dump(mode="json")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run meeting analysis on a JSON meeting file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  uv run python scripts/analyze_meeting.py meeting.json\n"
            "  uv run python scripts/analyze_meeting.py meeting.json --dry-run\n"
        ),
    )
    parser.add_argument("input", help="Meeting JSON file")
    parser.add_argument(
        "--meeting-id",
        default=None,
        help="Meeting id for segment/topic ids (default: random UUID)",
    )
    parser.add_argument("--output", default=None, help="Write result JSON here instead of stdout")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only assemble the transcript and extract conclusions (no LLM calls)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging output",
    )
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s %(levelname)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING, format="%(name)s %(levelname)s: %(message)s")

    path = Path(args.input)
    if not path.is_file():
        print(f"Error: input file does not exist: {path}")
        sys.exit(1)

    from src.meetflow.analysis.errors import IntegrityError

    try:
        result = asyncio.run(
            analyze(path, args.meeting_id or str(uuid.uuid4()), args.dry_run)
        )
    except IntegrityError as e:
        print(f"Error: transcript input rejected: {e}")
        sys.exit(1)

    rendered = json.dumps(result, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(rendered + "\n", encoding="utf-8")
        print(f"Result written to {args.output}")
    else:
        print(rendered)


if __name__ == "__main__":
    main()
