import argparse
import asyncio
import json
import logging
from pathlib import Path
import sys
import uuid

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "backend"))

from ticket_audit.core.config import get_settings
from ticket_audit.main import run_session
from ticket_audit.schemas.batch import BatchTicket

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate a JSON file of support tickets as one session.")
    parser.add_argument("tickets", help="Path to a JSON list of tickets.")
    parser.add_argument("--session-id", default=None, help="Session identifier (generated when omitted).")
    parser.add_argument("--output", default=None, help="Write the batch result JSON to this path.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    raw = json.loads(Path(args.tickets).read_text(encoding="utf-8"))
    tickets = [BatchTicket.model_validate(item) for item in raw]
    session_id = args.session_id or uuid.uuid4().hex

    result = asyncio.run(run_session(session_id, tickets, get_settings()))
    output = result.model_dump_json(indent=2, by_alias=True)
    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        logger.info("Wrote batch result", extra={"path": args.output, "session_id": session_id})
    else:
        print(output)


if __name__ == "__main__":
    main()
