import logging
import subprocess

from .errors import ExecutionFailure

logger = logging.getLogger(__name__)


def run_command(command: str) -> str:
    """Run ``command`` through the shell and return its stdout.

    Raises ExecutionFailure on a non-zero exit or when the shell cannot be
    started. No timeout is applied.
    """
    try:
        result = subprocess.run(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        raise ExecutionFailure(f"Could not start command: {e}") from e

    if result.returncode != 0:
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        raise ExecutionFailure(detail, returncode=result.returncode)
    return result.stdout.strip()
