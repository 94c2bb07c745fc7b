"""Local demo task for command executor integration tests.

Reads the JSON payload file and echoes it on stdout. Payload keys steer the outcome:
``fail`` exits 1 with a labelled failure detail on stderr, ``sleep`` delays the exit.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

from batch_orchestrator.orchestrator.errors import format_task_detail


def main(argv: list[str] | None = None) -> int:
    """Run the deterministic demo task."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--payload-file", required=True)
    args = parser.parse_args(argv)

    payload = json.loads(Path(args.payload_file).read_text("utf-8"))
    options = payload if isinstance(payload, dict) else {}

    delay = float(options.get("sleep", 0) or 0)
    if delay > 0:
        time.sleep(delay)

    failure = options.get("fail")
    if failure:
        sys.stderr.write(
            format_task_detail(
                subflow=str(options.get("subflow", "Main")),
                action_index=options.get("action", 1),
                action_name=str(options.get("action_name", "Echo payload")),
                message=str(failure),
            )
            + "\n",
        )
        return 1

    sys.stdout.write(json.dumps({"echo": payload}, ensure_ascii=False, sort_keys=True))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
