"""
Task input/output conventions for code running inside the TEE.

Inputs:
- Ordinary (non-secret) arguments arrive on argv.
- Secrets arrive as IEXEC_REQUESTER_SECRET_<n>, bound by index at dispatch.

Output:
- <IEXEC_OUT>/result.json holds the output record. It always has a boolean
  "success"; failures are {"success": false, "error": str, "timestamp": iso}.
- <IEXEC_OUT>/computed.json points the platform at result.json.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

RESULT_FILENAME = "result.json"
COMPUTED_FILENAME = "computed.json"


def read_requester_secret(index: int, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return the requester secret bound at `index`, or None if unbound."""
    environ = os.environ if environ is None else environ
    return environ.get(f"IEXEC_REQUESTER_SECRET_{index}") or None


def read_requester_secrets(count: int, environ: Optional[Mapping[str, str]] = None) -> Dict[int, str]:
    """Collect requester secrets 1..count that are present."""
    secrets = {}
    for index in range(1, count + 1):
        value = read_requester_secret(index, environ)
        if value is not None:
            secrets[index] = value
    return secrets


def failure_record(error: str) -> dict:
    return {
        "success": False,
        "error": error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def write_task_output(record: dict, out_dir: Optional[str] = None) -> Path:
    """
    Write the output record and the computed.json pointer.

    Args:
        record: JSON-serializable output record
        out_dir: Output directory (default: $IEXEC_OUT or ./output)

    Returns:
        Path to result.json
    """
    out_path = Path(out_dir or os.environ.get("IEXEC_OUT", "./output"))
    out_path.mkdir(parents=True, exist_ok=True)

    result_path = out_path / RESULT_FILENAME
    result_path.write_text(json.dumps(record, indent=2))
    (out_path / COMPUTED_FILENAME).write_text(
        json.dumps({"deterministic-output-path": str(result_path)})
    )

    logger.info(f"Output written to {result_path}")
    return result_path
